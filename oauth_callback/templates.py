"""HTML pages shown in the browser after the OAuth redirect."""

import html
from typing import Mapping

SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>Authorization Successful</title>
    <style>
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: #f4f6fb;
        }
        .card {
            background: white;
            padding: 40px 60px;
            border-radius: 12px;
            text-align: center;
            box-shadow: 0 4px 24px rgba(0,0,0,0.08);
        }
        h1 { color: #1a1a1a; margin: 0 0 8px 0; font-size: 22px; }
        p { color: #555; margin: 0; }
    </style>
</head>
<body>
    <div class="card">
        <h1>Authorization Successful</h1>
        <p>You can close this window and return to the application.</p>
    </div>
</body>
</html>"""

# Formatted with str.format, hence the doubled braces in CSS
ERROR_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>Authorization Failed</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: #fbf4f4;
        }}
        .card {{
            background: white;
            padding: 40px 60px;
            border-radius: 12px;
            text-align: center;
            box-shadow: 0 4px 24px rgba(0,0,0,0.08);
            max-width: 420px;
        }}
        h1 {{ color: #1a1a1a; margin: 0 0 8px 0; font-size: 22px; }}
        p {{ color: #555; margin: 0 0 16px 0; }}
        .error {{
            background: #fee;
            padding: 12px;
            border-radius: 8px;
            color: #c0392b;
            font-family: monospace;
            font-size: 14px;
        }}
    </style>
</head>
<body>
    <div class="card">
        <h1>Authorization Failed</h1>
        <p>The authorization server returned an error.</p>
        <div class="error">{error}: {description}</div>
        {more_info}
    </div>
</body>
</html>"""


def render_error(
    error: str,
    error_description: str | None = None,
    error_uri: str | None = None,
) -> str:
    """Render the built-in error page. All values are HTML-escaped."""
    more_info = ""
    if error_uri:
        more_info = f'<p><a href="{html.escape(error_uri, quote=True)}">More information</a></p>'
    return ERROR_HTML.format(
        error=html.escape(error or "unknown_error"),
        description=html.escape(error_description or "No description provided"),
        more_info=more_info,
    )


def render_template(template: str, params: Mapping[str, str | None]) -> str:
    """Substitute {{error}}, {{error_description}} and {{error_uri}} placeholders.

    Missing values become empty strings. Values are HTML-escaped since they
    come straight from the query string.
    """
    rendered = template
    for key in ("error", "error_description", "error_uri"):
        rendered = rendered.replace("{{" + key + "}}", html.escape(params.get(key) or ""))
    return rendered


def render_callback_html(
    params: Mapping[str, str | None],
    success_html: str | None = None,
    error_html: str | None = None,
) -> str:
    """Pick and render the page for a callback's query parameters."""
    if params.get("error"):
        if error_html:
            return render_template(error_html, params)
        return render_error(
            params["error"] or "",
            params.get("error_description"),
            params.get("error_uri"),
        )
    return success_html or SUCCESS_HTML
