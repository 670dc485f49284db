"""
HTML template for the consent page.
"""

from pathlib import Path
from typing import List

from jinja2 import Environment, FileSystemLoader

from tenant_idp.oauth.schemas import AuthorizeRequest, Client

_template_dir = Path(__file__).parent / "templates"
_env = Environment(
    loader=FileSystemLoader(_template_dir),
    autoescape=True,
)


def _format_lifetime_text(seconds: int) -> str:
    """Format refresh token lifetime as human-readable text."""
    days = seconds // 86400
    if days < 1:
        hours = max(1, seconds // 3600)
        return f"{hours} hour{'s' if hours > 1 else ''}"
    if days == 1:
        return "1 day"
    elif days < 7:
        return f"{days} days"
    elif days == 7:
        return "1 week"
    elif days < 30:
        weeks = days // 7
        return f"{weeks} week{'s' if weeks > 1 else ''}"
    return f"{days} days"


def consent_page(
    client: Client,
    request: AuthorizeRequest,
    tenant_id: str,
    scope_descriptions: List[str],
    action_url: str = "/authorize",
) -> str:
    """Generate the consent page HTML; the form posts back to the authorize endpoint."""
    template = _env.get_template("consent.jinja2")
    return template.render(
        action_url=action_url,
        app_name=client.name,
        app_description=client.description or "",
        app_logo_url=client.logo_url or "",
        homepage_url=client.homepage_url or "",
        is_first_party=client.is_first_party,
        client_id=client.client_id,
        redirect_uri=request.redirect_uri,
        scope=request.scope,
        state=request.state or "",
        code_challenge=request.code_challenge or "",
        code_challenge_method=request.code_challenge_method or "",
        tenant_id=tenant_id,
        scopes=scope_descriptions,
        lifetime_text=_format_lifetime_text(client.refresh_token_ttl),
    )
