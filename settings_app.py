"""Settings web app for STN Video Performance.

Serves the "Performance Options" section of the STN Video settings page and
handles its form submission.

Usage:
  1. Install dependencies (fastapi, uvicorn, python-multipart) if not already.
  2. Export an admin token: export STNVP_ADMIN_TOKEN=some-long-random-value
  3. Run: python stnvp.py --serve --options-file /path/to/options.json
  4. Open http://127.0.0.1:5006/settings?page=sendtonews-settings with
     ``Authorization: Bearer <token>``.

Security:
  - Saving requires a valid nonce for the ``stn_video_performance_settings``
    action AND the ``manage_options`` capability. Either failure ends the
    request with a 403 error page and nothing is written.
  - Set STNVP_NONCE_SECRET so nonces survive a restart; otherwise a random
    per-process secret is used.
"""
from __future__ import annotations

import os, hmac
from typing import Dict, Optional
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel

from stnvp_core import (
    __version__, ANONYMOUS, MANAGE_OPTIONS, NONCE_ACTION, SETTINGS_PAGE,
    EventLog, Hooks, NonceManager, OptionsFileError, Plugin, PluginCallbacks, SecurityError, SettingsStore, User,
    _invoke, esc_attr, save_settings_from_form,
)

DEFAULT_HOST = os.getenv("STNVP_HOST", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("STNVP_PORT", "5006"))

PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>%(title)s</title></head>
<body>
%(body)s
</body>
</html>"""

ERROR_TEMPLATE = """<div class="wp-die-message"><p>%(message)s</p></div>"""

class SettingsOut(BaseModel):
    hide_featured_metabox: bool
    load_delay_ms: int

def tokens_from_env() -> Dict[str, User]:
    token = os.getenv("STNVP_ADMIN_TOKEN")
    if not token:
        return {}
    return {token: User(user_id=1, login='admin', capabilities=frozenset({MANAGE_OPTIONS}))}

def _page(title: str, body: str) -> str:
    return PAGE_TEMPLATE % {'title': esc_attr(title), 'body': body}

def _error_page(message: str) -> str:
    return _page('Error', ERROR_TEMPLATE % {'message': esc_attr(message)})

def create_app(store: Optional[SettingsStore] = None, nonces: Optional[NonceManager] = None,
               tokens: Optional[Dict[str, User]] = None, callbacks: Optional[PluginCallbacks] = None,
               events: Optional[EventLog] = None) -> FastAPI:
    store = store or SettingsStore()
    nonces = nonces or NonceManager()
    tokens = tokens_from_env() if tokens is None else tokens
    hooks = Hooks(callbacks, events)
    plugin = Plugin(store, hooks, callbacks=callbacks, events=events)
    settings_path = f"/settings?page={SETTINGS_PAGE}"

    app = FastAPI(title="STN Video Performance Settings", version=__version__)
    app.state.plugin = plugin
    app.state.nonces = nonces

    def current_user(request: Request) -> User:
        scheme, _, token = request.headers.get('authorization', '').partition(' ')
        token = token.strip()
        if scheme.lower() != 'bearer' or not token:
            return ANONYMOUS
        for known, user in tokens.items():
            if hmac.compare_digest(known.encode('utf-8'), token.encode('utf-8')):
                return user
        return ANONYMOUS

    def forbidden(message: str = 'You do not have sufficient permissions to access this page.') -> HTMLResponse:
        return HTMLResponse(_error_page(message), status_code=403)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    @app.get("/settings", response_class=HTMLResponse)
    async def settings_page(request: Request):
        user = current_user(request)
        if not user.can(MANAGE_OPTIONS):
            return forbidden()
        notice = request.query_params.get('stn-perf-updated') == 'true'
        section = plugin.render_performance_settings_section(nonces.create(NONCE_ACTION, user.user_id), notice)
        return HTMLResponse(_page('STN Video Settings', section))

    @app.post("/settings")
    async def save_settings(request: Request):
        # Saves are only handled for the settings page itself
        if request.query_params.get('page') != SETTINGS_PAGE:
            return HTMLResponse(_error_page('Unknown settings page.'), status_code=404)
        form = await request.form()
        try:
            save_settings_from_form(store, form, current_user(request), nonces, events)
        except SecurityError as e:
            return forbidden(str(e))
        except OptionsFileError as e:
            _invoke(callbacks, 'log', f"[settings] save refused: {e}")
            return HTMLResponse(_error_page('Settings could not be saved: the options file is unreadable.'), status_code=500)
        # Redirect to avoid resubmission
        return RedirectResponse(url=f"{settings_path}&stn-perf-updated=true", status_code=303)

    @app.get("/api/settings", response_model=SettingsOut)
    async def effective_settings(request: Request):
        if not current_user(request).can(MANAGE_OPTIONS):
            return forbidden()
        settings = plugin.get_settings()
        return SettingsOut(hide_featured_metabox=settings.hide_featured_metabox, load_delay_ms=settings.load_delay_ms)

    return app

app = create_app()

def serve(argv: list[str]) -> int:  # pragma: no cover - thin uvicorn launcher
    import argparse
    import uvicorn
    p = argparse.ArgumentParser(description='Serve the STN Video Performance settings page')
    p.add_argument('--host', default=DEFAULT_HOST)
    p.add_argument('--port', type=int, default=DEFAULT_PORT)
    p.add_argument('--options-file', default=None, help='Options file holding the stored settings')
    args = p.parse_args(argv)
    uvicorn.run(create_app(SettingsStore(args.options_file)), host=args.host, port=args.port)
    return 0

if __name__ == "__main__":  # pragma: no cover
    import sys
    raise SystemExit(serve(sys.argv[1:]))
