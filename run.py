#!/usr/bin/env python3
"""Development server runner"""
import os
import sys
from backhaul import create_app

if __name__ == '__main__':
    # python run.py [development|production]
    config_name = sys.argv[1] if len(sys.argv) > 1 else 'development'
    app = create_app(config_name)

    # The reloader would start a second scheduler-owning process outside development
    debug = config_name == 'development'
    host = os.environ.get('HOST', '127.0.0.1')
    port = int(os.environ.get('PORT', 5000))
    app.run(host=host, port=port, debug=debug, use_reloader=debug)
