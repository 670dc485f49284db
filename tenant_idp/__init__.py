"""
Multi-tenant identity provider: OAuth2/OpenID Connect authorization server with
SSO sessions and single logout.
"""
