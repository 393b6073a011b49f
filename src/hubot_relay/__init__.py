"""Chat relay between HTTP clients and a hosted completion service.

This package provides a FastAPI application factory named ``create_app``
inside ``hubot_relay/server.py`` (see :func:`create_app`).

Typical usage
-------------
from hubot_relay import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

__all__ = ["create_app", "__version__"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.5.0"


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`hubot_relay.server.create_app`; the import is
    deferred so ``import hubot_relay`` stays cheap for the cleanup script.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
