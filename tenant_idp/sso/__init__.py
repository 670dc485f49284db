"""
SSO sessions, connected apps and single logout.
"""
