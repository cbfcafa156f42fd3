"""Authentication (JWT bearer tokens).

Services:
    - ConnectionAuthenticator: token -> ConnectionIdentity for sockets and REST.
"""
