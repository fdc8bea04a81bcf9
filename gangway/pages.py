"""
HTML pages served by Gangway.

Pages are small inline templates; every interpolated value is escaped.
"""

from html import escape
from typing import List, Optional

from fastapi.responses import HTMLResponse


_STYLE = """
    * { margin: 0; padding: 0; box-sizing: border-box; }
    body {
        font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
        background: #f3f4f6;
        min-height: 100vh;
        padding: 40px 20px;
        color: #1f2937;
    }
    .container {
        background: white;
        border-radius: 12px;
        padding: 40px;
        max-width: 860px;
        margin: 0 auto;
        box-shadow: 0 10px 40px rgba(0,0,0,0.1);
    }
    h1 { font-size: 26px; margin-bottom: 16px; }
    h2 { font-size: 18px; margin: 24px 0 12px; }
    p { color: #4b5563; line-height: 1.6; margin-bottom: 12px; }
    pre {
        background: #111827;
        color: #e5e7eb;
        padding: 16px;
        border-radius: 8px;
        overflow-x: auto;
        font-size: 13px;
        white-space: pre-wrap;
        word-break: break-all;
    }
    .button {
        display: inline-block;
        background: #326ce5;
        color: white;
        padding: 12px 28px;
        border-radius: 8px;
        text-decoration: none;
        font-weight: 600;
        margin-right: 8px;
    }
    .button.secondary { background: #6b7280; }
    .error { border-top: 6px solid #ef4444; }
"""


def _page(title: str, body: str, extra_class: str = "") -> str:
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{escape(title)}</title>
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container {extra_class}">
{body}
    </div>
</body>
</html>
"""


def render_home_page(cluster_name: str) -> HTMLResponse:
    body = f"""
        <h1>Kubernetes Authentication</h1>
        <p>Sign in with your identity provider to get a <code>kubectl</code>
        configuration for <strong>{escape(cluster_name)}</strong>.</p>
        <a href="/login" class="button">Sign In</a>
"""
    return HTMLResponse(content=_page("Gangway", body), status_code=200)


def render_commandline_page(
    cluster_name: str,
    username: str,
    email: Optional[str],
    commands: List[str],
    kubeconfig_yaml: str,
) -> HTMLResponse:
    """
    Render the authenticated page with the kubectl setup instructions.

    Args:
        cluster_name: Cluster the credential is for
        username: Kubeconfig user name
        email: User's email claim, if any
        commands: ``kubectl config`` commands, one per entry
        kubeconfig_yaml: Rendered kubeconfig
    """
    who = escape(username)
    if email:
        who += f" ({escape(email)})"

    body = f"""
        <h1>Welcome, {who}</h1>
        <p>Run the following commands to configure <code>kubectl</code> for
        <strong>{escape(cluster_name)}</strong>:</p>
        <pre>{escape(chr(10).join(commands))}</pre>
        <h2>Or download the kubeconfig</h2>
        <pre>{escape(kubeconfig_yaml)}</pre>
        <a href="/kubeconf" class="button">Download Kubeconfig</a>
        <a href="/logout" class="button secondary">Logout</a>
"""
    return HTMLResponse(content=_page(f"{cluster_name} - kubectl setup", body), status_code=200)


def render_error_page(
    title: str,
    message: str,
    show_retry: bool = True,
    status_code: int = 400,
) -> HTMLResponse:
    """
    Render error page for authentication failures.

    Args:
        title: Error title
        message: Error message (no tokens or secrets)
        show_retry: Whether to show a link back to /login
        status_code: HTTP status code
    """
    retry_button = '<a href="/login" class="button">Try Again</a>' if show_retry else ""

    body = f"""
        <h1>{escape(title)}</h1>
        <p>{escape(message)}</p>
        {retry_button}
"""
    return HTMLResponse(content=_page(title, body, extra_class="error"), status_code=status_code)
