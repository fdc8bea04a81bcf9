"""
Gangway
=======

OIDC login gateway that issues kubectl credentials.

Modules:
- config: Settings loaded from YAML and GANGWAY_* environment variables
- tls: Trust store and HTTP client for identity provider calls
- auth: Authorization code flow, sessions, access middleware, routes
- kubeconfig: Credential artifact handed out after login
- server: uvicorn supervisor with graceful shutdown
- main: Application factory and process entry point
"""

__version__ = "1.0.0"
