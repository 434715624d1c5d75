"""Logging helpers for the alias relay."""

import logging

def get_logger(name: str = "AliasRelay") -> logging.Logger:
    """Return a :class:`logging.Logger` for the relay.

    Handlers and format are configured once with ``logging.basicConfig()``
    in ``main.py``; this helper never attaches handlers itself.
    """
    return logging.getLogger(name)
