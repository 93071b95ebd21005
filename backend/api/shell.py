"""HTML shell served on the landing routes.

The page embeds the session's default endpoint in an iframe and polls the
status route. It tells three situations apart: still loading, session
expired, and server error.
"""

import html
import json
from string import Template

_SHELL_TEMPLATE = Template(
    """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Sandbox Session</title>
  <style>
    body, html { margin: 0; padding: 0; height: 100%; overflow: hidden; }
    .container { display: flex; flex-direction: column; height: 100vh; }
    iframe { flex: 1; width: 100%; border: none; }
    .info {
      background: #f0f0f0; padding: 10px; font-family: Arial, sans-serif;
      display: flex; justify-content: space-between;
    }
    .session-id { font-size: 0.8em; color: #666; }
    .overlay {
      position: absolute; inset: 0; background: white; display: flex;
      flex-direction: column; justify-content: center; align-items: center;
      z-index: 1000; font-family: Arial, sans-serif;
    }
    .hidden { display: none; }
    .spinner {
      border: 4px solid #f3f3f3; border-top: 4px solid #3498db;
      border-radius: 50%; width: 30px; height: 30px;
      animation: spin 2s linear infinite; margin: 20px auto;
    }
    @keyframes spin { 0% { transform: rotate(0deg); } 100% { transform: rotate(360deg); } }
  </style>
</head>
<body>
  <div id="loading" class="overlay">
    <div class="spinner"></div>
    <p>Starting your sandbox... This may take a few moments</p>
  </div>
  <div id="expired" class="overlay hidden">
    <p>Your session has expired.</p>
    <p><a href="$new_url">Start a new session</a></p>
  </div>
  <div id="error" class="overlay hidden">
    <p>Something went wrong while talking to the server.</p>
    <p><a href="$landing_url">Reload</a></p>
  </div>
  <div class="container">
    <div class="info">
      <div>Sandbox session (expires in <span id="remaining">$remaining_minutes</span> min)</div>
      <div class="session-id">Session ID: $short_id</div>
    </div>
    <iframe id="sandbox-frame" src="$frame_url" allowfullscreen></iframe>
  </div>
  <script>
    const statusUrl = $status_url_json;
    const pollIntervalMs = $poll_interval_ms;

    function show(id) {
      for (const name of ["loading", "expired", "error"]) {
        document.getElementById(name).classList.toggle("hidden", name !== id);
      }
    }

    document.getElementById("sandbox-frame").onload = () => show(null);
    document.getElementById("sandbox-frame").onerror = () => show("loading");

    const statusCheck = setInterval(async () => {
      try {
        const response = await fetch(statusUrl, { credentials: "same-origin" });
        if (response.status === 404) {
          clearInterval(statusCheck);
          show("expired");
          return;
        }
        if (!response.ok) {
          show("error");
          return;
        }
        const data = await response.json();
        document.getElementById("remaining").textContent =
          Math.ceil(data.remainingTimeSeconds / 60);
      } catch (err) {
        show("error");
      }
    }, pollIntervalMs);
  </script>
</body>
</html>
"""
)


def render_shell(
    session_id: str,
    *,
    public_url: str,
    default_endpoint: str,
    remaining_seconds: int,
    poll_interval_seconds: int,
) -> str:
    """Render the landing page for ``session_id``.

    Args:
        session_id: The session the page is bound to.
        public_url: Prefix for generated links ("" for relative links).
        default_endpoint: Endpoint embedded in the iframe.
        remaining_seconds: Seconds left in the session.
        poll_interval_seconds: Status poll interval.

    Returns:
        The HTML document.
    """
    frame_url = f"{public_url}/proxy/{session_id}/{default_endpoint}/"
    status_url = f"{public_url}/status/{session_id}"
    return _SHELL_TEMPLATE.substitute(
        frame_url=html.escape(frame_url, quote=True),
        new_url=html.escape(f"{public_url}/new", quote=True),
        landing_url=html.escape(f"{public_url}/", quote=True),
        status_url_json=json.dumps(status_url),
        short_id=html.escape(session_id[:13]),
        remaining_minutes=max(0, -(-remaining_seconds // 60)),
        poll_interval_ms=max(1, poll_interval_seconds) * 1000,
    )
