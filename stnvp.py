"""stnvp entrypoint (minimal dispatcher only).

Core implementation lives in:
  * stnvp_core.py   - settings, embed rewrite, hooks, headless CLI
  * settings_app.py - FastAPI settings page using the core objects

Plain headless usage never imports FastAPI.
"""
from __future__ import annotations

import sys
from stnvp_core import headless_main


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if '--serve' in args:
        # Lazy import so the CLI path stays light
        try:
            import settings_app  # type: ignore
        except ModuleNotFoundError as e:
            if 'fastapi' in str(e) or 'pydantic' in str(e):
                print('Settings app dependencies not installed. Install with: pip install stn-video-performance')
                return 1
            raise
        return settings_app.serve([a for a in args if a != '--serve'])
    return headless_main([a for a in args if a != '--headless'])


if __name__ == '__main__':  # pragma: no cover
    raise SystemExit(main())
