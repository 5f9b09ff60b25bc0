from __future__ import annotations

import html
import urllib.parse

_STYLES = """
    body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Arial, sans-serif;
           max-width: 560px; margin: 48px auto; padding: 0 16px; color: #1f2328; }
    .card { border: 1px solid #d0d7de; border-radius: 8px; padding: 24px; }
    .info { background: #f6f8fa; padding: 12px 16px; border-radius: 6px; margin: 16px 0; }
    .redirect { font-family: monospace; word-break: break-all; }
    .buttons { display: flex; gap: 12px; margin-top: 24px; }
    button { padding: 8px 20px; border-radius: 6px; border: 1px solid #d0d7de; cursor: pointer; }
    .approve { background: #1f883d; color: #fff; border-color: #1f883d; }
    .success { color: #1f883d; }
    .error { color: #cf222e; }
"""


def _page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>{html.escape(title)}</title>
    <style>{_STYLES}</style>
  </head>
  <body>
    <div class="card">
{body}
    </div>
  </body>
</html>
"""


def render_consent_page(
    *,
    action: str,
    state: str,
    client_name: str,
    server_name: str,
    server_description: str = "",
    redirect_uri: str = "",
    scopes: str = "",
) -> str:
    description = (
        f"<p>{html.escape(server_description)}</p>" if server_description else ""
    )
    redirect = (
        f"""<p>Credentials will be sent to:</p>
        <p class="redirect">{html.escape(redirect_uri)}</p>"""
        if redirect_uri
        else ""
    )
    requested = (
        f"<p>Requested scopes: <strong>{html.escape(scopes)}</strong></p>" if scopes else ""
    )
    body = f"""
      <h2>{html.escape(server_name)}</h2>
      {description}
      <div class="info">
        <p><strong>{html.escape(client_name)}</strong> is requesting access.</p>
        {requested}
        {redirect}
      </div>
      <form method="POST" action="{html.escape(action)}">
        <input type="hidden" name="state" value="{html.escape(state)}" />
        <div class="buttons">
          <button type="submit" name="action" value="approve" class="approve">Approve</button>
          <button type="submit" name="action" value="deny">Deny</button>
        </div>
      </form>"""
    return _page(f"Authorize {client_name}", body)


def render_link_success_page(*, provider_label: str, display_name: str, email: str) -> str:
    body = f"""
      <h2 class="success">{html.escape(provider_label)} authentication successful</h2>
      <div class="info">
        <p>Authenticated as: <strong>{html.escape(display_name)}</strong></p>
        <p>Email: <strong>{html.escape(email)}</strong></p>
      </div>
      <p>You can now use the {html.escape(provider_label)} tools from your MCP client.</p>
      <p><a href="javascript:window.close()">Close this window</a></p>"""
    return _page(f"{provider_label} connected", body)


def render_link_error_page(
    *,
    provider_label: str,
    message: str,
    authorize_path: str,
    owner_identity: str | None,
) -> str:
    if owner_identity:
        retry_url = f"{authorize_path}?{urllib.parse.urlencode({'userId': owner_identity})}"
        retry = f'<p><a href="{html.escape(retry_url)}">Try again</a></p>'
    else:
        retry = "<p>Start the connection again from your MCP client.</p>"
    body = f"""
      <h2 class="error">{html.escape(provider_label)} authorization failed</h2>
      <p>{html.escape(message)}</p>
      {retry}"""
    return _page(f"{provider_label} authorization failed", body)
