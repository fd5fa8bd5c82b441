# Routes package init
"""
Courier Backend — API Routes Package
======================================

Route Inventory:
    - health.py:     GET  /                     (liveness probe, unversioned)
    - callbacks.py:  POST /v1/callback/email    (email delivery callbacks, raw text body)

Business routers are passed to `create_app()` and mounted under the
versioned prefix next to the callback router.
"""
