"""
Credential handling for job, destination and provider configs.

Secret fields are encrypted at rest with the global crypto manager. This
module knows which fields are secret for each type, how to decrypt them for
execution, how to mask them for display, and how to turn either inline
credentials or a credential provider reference into usable S3 credentials.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from backhaul import db
from backhaul.utils.crypto import crypto_manager, is_encrypted
from backhaul.utils.masking import (
    CONNECTION_STRING_CREDENTIALS, MASK, is_masked_value, mask_value
)
from .errors import ConfigurationError, CredentialResolutionError

logger = logging.getLogger(__name__)

# Sensitive fields per backup job type (mongodb's password lives in connection_string)
SENSITIVE_FIELDS: Dict[str, List[str]] = {
    'postgres': ['password'],
    'mysql': ['password'],
    'mongodb': [],
    'redis': ['password'],
    's3': ['access_key_id', 'secret_access_key'],
}

# Sensitive fields per credential provider type
PROVIDER_SENSITIVE_FIELDS: Dict[str, List[str]] = {
    's3': ['access_key_id', 'secret_access_key'],
}


def get_sensitive_fields(source_type: str) -> List[str]:
    return SENSITIVE_FIELDS.get(source_type, [])


def encrypt_sensitive_fields(config: Dict[str, Any], fields: List[str]) -> Dict[str, Any]:
    """
    Encrypt the given fields of a config.

    Already-encrypted and masked values are left as they are. Encryption
    errors propagate so plaintext is never silently stored.
    """
    result = dict(config)
    for field in fields:
        value = result.get(field)
        if value and isinstance(value, str) and not is_encrypted(value) and not is_masked_value(value):
            result[field] = crypto_manager.encrypt(value)
    return result


def decrypt_sensitive_fields(config: Dict[str, Any], fields: List[str], strict: bool = False) -> Dict[str, Any]:
    """
    Decrypt the given fields of a config.

    Plaintext and masked values pass through untouched. A field that fails
    to decrypt is logged and left as-is, unless ``strict`` is set, in which
    case CredentialResolutionError is raised.
    """
    result = dict(config)
    for field in fields:
        value = result.get(field)
        if not (value and isinstance(value, str) and is_encrypted(value)):
            continue
        try:
            result[field] = crypto_manager.decrypt(value)
        except Exception as e:
            if strict:
                raise CredentialResolutionError(f"Failed to decrypt field: {field}") from e
            logger.error(f"Failed to decrypt field: {field} ({type(e).__name__})")
    return result


def _replace_connection_password(connection_string: str, password: str) -> str:
    return CONNECTION_STRING_CREDENTIALS.sub(
        lambda match: f'//{match.group(1)}:{password}@',
        connection_string,
        count=1
    )


def encrypt_config(source_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
    """Encrypt sensitive fields in a backup job config for storage."""
    result = encrypt_sensitive_fields(config, get_sensitive_fields(source_type))

    connection_string = result.get('connection_string')
    if source_type == 'mongodb' and connection_string and '****' not in str(connection_string):
        match = CONNECTION_STRING_CREDENTIALS.search(connection_string)
        if match and not is_encrypted(match.group(2)):
            encrypted_password = crypto_manager.encrypt(match.group(2))
            result['connection_string'] = _replace_connection_password(connection_string, encrypted_password)

    return result


def decrypt_config(source_type: str, config: Dict[str, Any], strict: bool = False) -> Dict[str, Any]:
    """Decrypt sensitive fields in a backup job config."""
    result = decrypt_sensitive_fields(config, get_sensitive_fields(source_type), strict=strict)

    connection_string = result.get('connection_string')
    if source_type == 'mongodb' and connection_string:
        match = CONNECTION_STRING_CREDENTIALS.search(connection_string)
        if match and is_encrypted(match.group(2)):
            try:
                password = crypto_manager.decrypt(match.group(2))
                result['connection_string'] = _replace_connection_password(connection_string, password)
            except Exception as e:
                if strict:
                    raise CredentialResolutionError("Failed to decrypt MongoDB connection string password") from e
                logger.error("Failed to decrypt MongoDB connection string password")

    return result


def get_decrypted_config(source_type: str, config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Decrypted job config for execution; undecryptable secrets are an error here."""
    return decrypt_config(source_type, config or {}, strict=True)


def _mask_secret(value: str) -> str:
    # A value that could not be decrypted is never partially revealed
    if is_encrypted(value):
        return MASK
    return mask_value(value)


def mask_config(source_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
    """Mask sensitive fields of a job config for API responses (decrypts first)."""
    masked = decrypt_config(source_type, config or {})

    for field in get_sensitive_fields(source_type):
        if masked.get(field) and isinstance(masked[field], str):
            masked[field] = _mask_secret(masked[field])

    connection_string = masked.get('connection_string')
    if source_type == 'mongodb' and connection_string:
        masked['connection_string'] = CONNECTION_STRING_CREDENTIALS.sub(
            lambda match: f'//{match.group(1)}:{_mask_secret(match.group(2))}@',
            connection_string,
            count=1
        )

    return masked


def merge_config_with_existing(source_type: str, new_config: Dict[str, Any],
                               existing_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge an edited config with the stored one, keeping stored secrets
    wherever the client sent back a masked placeholder.
    """
    merged = dict(new_config)

    for field in get_sensitive_fields(source_type):
        if is_masked_value(merged.get(field)):
            merged[field] = existing_config.get(field)

    new_connection = merged.get('connection_string')
    if source_type == 'mongodb' and new_connection and '****' in str(new_connection):
        existing_connection = str(existing_config.get('connection_string') or '')
        existing_match = CONNECTION_STRING_CREDENTIALS.search(existing_connection)
        if existing_match:
            merged['connection_string'] = _replace_connection_password(new_connection, existing_match.group(2))
        else:
            merged['connection_string'] = existing_config.get('connection_string')

    return merged


def encrypt_provider_config(provider_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
    return encrypt_sensitive_fields(config, PROVIDER_SENSITIVE_FIELDS.get(provider_type, []))


def decrypt_provider_config(provider_type: str, config: Dict[str, Any], strict: bool = False) -> Dict[str, Any]:
    return decrypt_sensitive_fields(config, PROVIDER_SENSITIVE_FIELDS.get(provider_type, []), strict=strict)


def mask_provider_config(provider_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
    masked = decrypt_provider_config(provider_type, config or {})
    for field in PROVIDER_SENSITIVE_FIELDS.get(provider_type, []):
        if masked.get(field) and isinstance(masked[field], str):
            masked[field] = _mask_secret(masked[field])
    return masked


@dataclass(frozen=True)
class ObjectStorageCredentials:
    """Resolved S3 credentials. Region defaults to 'auto' for non-AWS stores."""
    access_key_id: str
    secret_access_key: str
    region: str = 'auto'
    endpoint: Optional[str] = None

    def __repr__(self):
        return f'ObjectStorageCredentials(region={self.region!r}, endpoint={self.endpoint!r})'


@dataclass(frozen=True)
class InlineCredentials:
    """Credentials embedded in an (already decrypted) config."""
    config: Dict[str, Any]

    def __repr__(self):
        return 'InlineCredentials(...)'


@dataclass(frozen=True)
class ProviderReference:
    """Credentials held by a stored CredentialProvider."""
    provider_id: int


CredentialSource = Union[InlineCredentials, ProviderReference]


def _credentials_from_config(config: Dict[str, Any]) -> ObjectStorageCredentials:
    access_key_id = config.get('access_key_id')
    secret_access_key = config.get('secret_access_key')
    if not access_key_id or not secret_access_key:
        raise CredentialResolutionError("Missing access_key_id or secret_access_key")
    if is_encrypted(access_key_id) or is_encrypted(secret_access_key):
        raise CredentialResolutionError("Object storage credentials are still encrypted")
    return ObjectStorageCredentials(
        access_key_id=access_key_id,
        secret_access_key=secret_access_key,
        region=config.get('region') or 'auto',
        endpoint=config.get('endpoint') or None,
    )


def resolve_object_storage_credentials(source: CredentialSource) -> ObjectStorageCredentials:
    """
    Turn either credential variant into usable S3 credentials.

    Raises:
        CredentialResolutionError: Provider missing or secrets undecryptable
    """
    if isinstance(source, InlineCredentials):
        return _credentials_from_config(decrypt_sensitive_fields(
            source.config, PROVIDER_SENSITIVE_FIELDS['s3'], strict=True
        ))

    from backhaul.models import CredentialProvider

    provider = db.session.get(CredentialProvider, source.provider_id)
    if provider is None:
        raise CredentialResolutionError(f"Credential provider {source.provider_id} not found")

    provider_config = decrypt_provider_config(provider.type, provider.config or {}, strict=True)
    logger.info(f"Using credential provider: {provider.name}")
    return _credentials_from_config(provider_config)


def resolve_destination_config(destination) -> Dict[str, Any]:
    """
    Full config for a destination: its own settings plus, for s3
    destinations, the credentials of its provider.

    Raises:
        CredentialResolutionError: s3 destination without a usable provider
    """
    config = dict(destination.config or {})
    if destination.type != 's3':
        return config

    if not destination.credential_provider_id:
        raise CredentialResolutionError(
            f"S3 destination '{destination.name}' requires a credential provider"
        )
    if not config.get('bucket'):
        raise ConfigurationError(f"S3 destination '{destination.name}' has no bucket configured")

    credentials = resolve_object_storage_credentials(ProviderReference(destination.credential_provider_id))
    config['credentials'] = credentials
    return config


def resolve_source_config(job) -> Dict[str, Any]:
    """
    Decrypted job config ready for a source strategy.

    For s3 source jobs the credentials are resolved from the job's provider
    reference if it has one, otherwise from the inline fields.
    """
    config = get_decrypted_config(job.type, job.config)

    if job.type == 's3':
        if job.source_credential_provider_id:
            credential_source = ProviderReference(job.source_credential_provider_id)
        else:
            credential_source = InlineCredentials(config)
        config['credentials'] = resolve_object_storage_credentials(credential_source)

    return config
