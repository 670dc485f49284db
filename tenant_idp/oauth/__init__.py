"""
OAuth2 / OpenID Connect authorization server.
"""
