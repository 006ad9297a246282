"""Web API for Lightkeeper.

The application itself lives in ``lightkeeper.webapp.app``.
"""
