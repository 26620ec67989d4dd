# -*- coding: utf-8 -*-
# ===================================================================
# 🚗 Car Advisor API – entry point
# ===================================================================
# Render runs:
# gunicorn "main:create_app()" --bind 0.0.0.0:$PORT --threads 8
# so the app must not be created at import time.

import os

from caradvisor.factory import create_app  # noqa: F401
from caradvisor.extensions import db  # noqa: F401
from caradvisor.models import UserAccount, PurchaseRecord  # noqa: F401

if __name__ == '__main__':
    app = create_app()
    port = int(os.environ.get('PORT', 3000))
    debug = os.environ.get('FLASK_DEBUG', '').lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug, threaded=True)
