"""Core helpers + headless logic for STN Video Performance.

Rewrites the markup produced by the ``[sendtonews]`` video shortcode so the
player script loads after a configurable delay and the player box keeps a
fixed 16:9 footprint while it loads. Everything is gated by a small settings
record stored in a JSON options file.

Separated from the web layer so unit tests and headless/CI usage do not need
FastAPI. The settings app (`settings_app.py`) and dispatcher (`stnvp.py`) are
thin layers over the objects and functions defined here.
"""
from __future__ import annotations
import os, sys, json, re, html, hmac, hashlib, math, time, uuid, tempfile, importlib, importlib.util
from datetime import datetime, timezone
from dataclasses import dataclass, asdict, replace
from typing import Optional, Callable, List, Dict, Any, Mapping
from urllib.parse import urlsplit

__version__ = "1.0.0"

# ---------------- Exit Codes & Schema ----------------
SCHEMA_VERSION = 1
EXIT_SUCCESS = 0
EXIT_GENERIC_FAILURE = 1
EXIT_CONFIG_ERROR = 16

__all__ = [
    "__version__",
    "Settings",
    "SettingsStore",
    "PostMetaStore",
    "RenderContext",
    "Hooks",
    "Plugin",
    "resolve_settings",
    "rewrite_embed",
    "lookup_thumbnail",
    "save_settings_from_form",
    "SecurityError",
    "OptionsFileError",
    "headless_main",
]

# ---- fixed names shared with the STN Video plugins ----
OPTION_NAME = 'stn_video_performance_settings'
SHORTCODE_TAG = 'sendtonews'
SETTINGS_PAGE = 'sendtonews-settings'
NONCE_ACTION = 'stn_video_performance_settings'
NONCE_FIELD = 'stn_video_performance_nonce'
HIDE_METABOX_FIELD = 'hide_featured_video_metabox'
LOAD_DELAY_FIELD = 'stn_video_load_delay'
MANAGE_OPTIONS = 'manage_options'
FEATURED_VIDEO_METABOX = 'stnvideo_featured_video'
DEFAULT_FEATURED_SCREENS = ('post', 'page')
DEFAULT_SCHEMA_META_KEY = 'hvy_video_schema_data'
META_STATUS_KEY = 'stnvm_status'
META_KEYS_KEY = 'stnvm_keys'
META_STATUS_OK = 'ok'
DEFAULT_OPTIONS_FILE = 'stnvp_options.json'
DAY_IN_SECONDS = 86400

DEFAULT_SETTINGS = {
    HIDE_METABOX_FIELD: 0,
    LOAD_DELAY_FIELD: 0,
}


class SecurityError(Exception):
    """Fatal rejection of a settings save (forged request or missing capability)."""

class OptionsFileError(Exception):
    """The options file exists but cannot be read back as a mapping."""


# ---------------- Callbacks & structured events -----------------
class PluginCallbacks:
    """Interface for CLI / web log integration (all optional)."""
    def log(self, message: str): ...  # pragma: no cover - interface stub

def _invoke(cb, name: str, *a):
    if cb is None: return
    fn = getattr(cb, name, None)
    if callable(fn):
        try: fn(*a)
        except Exception: pass

class EventLog:
    """JSON event envelope writer.

    Events go to ``callbacks.log`` when ``json_logs`` is set and are appended
    as NDJSON to ``events_file`` when one is given. ``seq`` starts at 1 and the
    ``run_id`` is constant for the lifetime of the instance.
    """
    def __init__(self, callbacks: Optional[PluginCallbacks] = None, json_logs: bool = False, events_file: Optional[str] = None):
        self.callbacks = callbacks
        self.json_logs = json_logs
        self.events_file = events_file
        self.run_id = uuid.uuid4().hex
        self._seq = 0

    @property
    def enabled(self) -> bool:
        return bool(self.json_logs or self.events_file)

    def emit(self, event: str, **data):
        if not self.enabled:
            return
        self._seq += 1
        payload = {
            'event': event,
            'ts': datetime.now(timezone.utc).isoformat(),
            'seq': self._seq,
            'run_id': self.run_id,
            'schema_version': SCHEMA_VERSION,
            'tool_version': __version__,
            **data
        }
        line = json.dumps(payload)
        if self.json_logs:
            _invoke(self.callbacks, 'log', line)
        if self.events_file:
            try:
                with open(self.events_file, 'a', encoding='utf-8') as ef:
                    ef.write(line + '\n')
            except OSError as e:
                _invoke(self.callbacks, 'log', f"[events] write failed: {e}")

def _emit(events: Optional[EventLog], event: str, **data):
    if events is not None:
        events.emit(event, **data)


# ---------------- Sanitizing / escaping -----------------
_TAG_RE = re.compile(r"<[^>]*>?")
_OCTET_RE = re.compile(r"%[a-fA-F0-9]{2}")
_WS_RE = re.compile(r"[\r\n\t ]+")
_CLASS_STRIP_RE = re.compile(r"[^A-Za-z0-9_-]")
# Characters kept by the URL sanitizer; everything else is stripped.
_URL_STRIP_RE = re.compile(r"[^a-z0-9\-~+_.?#=!&;,/:%@$|*'()\[\]\x80-\xff]", re.IGNORECASE)
_JS_ESCAPES = {
    '\\': '\\\\', '"': '\\"', "'": "\\'", '\n': '\\n', '\r': '\\r',
    '<': '\\u003C', '>': '\\u003E', '&': '\\u0026',
    '\u2028': '\\u2028', '\u2029': '\\u2029',
}
_CSS_STRING_ESCAPES = {'\\': '\\\\', '"': '\\"', '\n': '\\A ', '<': '\\3C ', '>': '\\3E '}

def esc_attr(text: Any) -> str:
    """Escape a value for an HTML attribute (or text) context."""
    return html.escape('' if text is None else str(text), quote=True)

def esc_js(text: Any) -> str:
    """Escape a value for a double- or single-quoted string inside an inline <script>."""
    return ''.join(_JS_ESCAPES.get(ch, ch) for ch in ('' if text is None else str(text)))

def esc_css_string(text: Any) -> str:
    return ''.join(_CSS_STRING_ESCAPES.get(ch, ch) for ch in ('' if text is None else str(text)))

def esc_url_raw(url: Any, protocols: tuple = ('http', 'https')) -> str:
    """Sanitize a URL for storage or for script/CSS use.

    Spaces become ``%20``, characters outside the URL alphabet are stripped and
    the scheme must be one of ``protocols``. Anything else (including scheme-less
    or protocol-relative URLs) sanitizes to an empty string.
    """
    if not isinstance(url, str):
        return ''
    url = url.strip().replace(' ', '%20')
    url = _URL_STRIP_RE.sub('', url)
    if not url:
        return ''
    try:
        parts = urlsplit(url)
    except ValueError:
        return ''
    if parts.scheme.lower() not in protocols or not parts.netloc:
        return ''
    return url

def sanitize_text_field(value: Any) -> str:
    if value is None or isinstance(value, (dict, list, tuple)):
        return ''
    text = str(value)
    text = _TAG_RE.sub('', text)
    text = _OCTET_RE.sub('', text)
    return _WS_RE.sub(' ', text).strip()

def sanitize_html_class(value: Any) -> str:
    return _CLASS_STRIP_RE.sub('', _OCTET_RE.sub('', '' if value is None else str(value)))

def force_https(url: str) -> str:
    if url.startswith('//'):
        return 'https:' + url
    return url

_INT_PREFIX_RE = re.compile(r"^\s*([+-]?\d+)")

def absint(value: Any) -> int:
    """Non-negative integer from loosely typed input (leading digits of strings, truncated floats)."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return abs(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value): return 0
        return abs(int(value))
    if isinstance(value, str):
        m = _INT_PREFIX_RE.match(value)
        return abs(int(m.group(1))) if m else 0
    return 0

def _is_empty(value: Any) -> bool:
    # Same notion of "empty" the stored option record was written with (0, '0', '' ...).
    if value is None or value is False: return True
    if isinstance(value, (int, float)) and not isinstance(value, bool): return value == 0
    if isinstance(value, str): return value in ('', '0')
    if isinstance(value, (list, tuple, dict)): return len(value) == 0
    return False


# ---------------- Shortcode attributes -----------------
_ATTR_RE = re.compile(
    r"""([\w-]+)\s*=\s*"([^"]*)"(?:\s|$)"""
    r"""|([\w-]+)\s*=\s*'([^']*)'(?:\s|$)"""
    r"""|([\w-]+)\s*=\s*([^\s'"]+)(?:\s|$)"""
    r"""|"([^"]*)"(?:\s|$)"""
    r"""|'([^']*)'(?:\s|$)"""
    r"""|(\S+)(?:\s|$)"""
)

def parse_shortcode_attrs(text: str) -> Dict[Any, str]:
    """Parse a raw shortcode attribute string.

    Named values are keyed by their lower-cased name; bare values are keyed by
    position (0, 1, ...), in the order they appear.
    """
    attrs: Dict[Any, str] = {}
    if not text:
        return attrs
    text = re.sub(r"[\u00a0\u200b]+", ' ', text)
    positional = 0
    for m in _ATTR_RE.finditer(text):
        if m.group(1) is not None:
            attrs[m.group(1).lower()] = m.group(2)
        elif m.group(3) is not None:
            attrs[m.group(3).lower()] = m.group(4)
        elif m.group(5) is not None:
            attrs[m.group(5).lower()] = m.group(6)
        else:
            value = next(g for g in (m.group(7), m.group(8), m.group(9)) if g is not None)
            attrs[positional] = value
            positional += 1
    return attrs


# ---------------- Stores -----------------
def _load_json_or_yaml(path: Optional[str], strict: bool = False) -> dict:
    """Mapping stored at ``path``; ``{}`` when missing or empty.

    An unreadable or non-mapping file reads as ``{}`` too, unless ``strict``
    is set, in which case it raises OptionsFileError.
    """
    if not path or not os.path.exists(path): return {}
    try:
        if os.path.getsize(path) == 0: return {}
        with open(path, 'r', encoding='utf-8') as f:
            if path.lower().endswith(('.yml', '.yaml')):
                import yaml
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
    except Exception as e:
        if strict:
            raise OptionsFileError(f"cannot parse {path}: {e}") from e
        return {}
    if isinstance(data, dict):
        return data
    if strict:
        raise OptionsFileError(f"{path} does not hold a mapping")
    return {}

class SettingsStore:
    """Options file (``{option_name: value}``) holding the persisted settings record.

    Nothing is read at construction; every lookup re-reads the file so a save
    from another request is visible on the next render.
    """
    def __init__(self, path: Optional[str] = None):
        self.path = path or os.environ.get('STNVP_OPTIONS_FILE') or DEFAULT_OPTIONS_FILE

    def get_option(self, name: str, default: Any = None) -> Any:
        return _load_json_or_yaml(self.path).get(name, default)

    def update_option(self, name: str, value: Any) -> None:
        """Write one option, keeping the others. Refuses to replace a file it cannot parse."""
        options = _load_json_or_yaml(self.path, strict=True)
        options[name] = value
        folder = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(folder, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix='.stnvp_', suffix='.tmp', dir=folder)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                if self.path.lower().endswith(('.yml', '.yaml')):
                    import yaml
                    yaml.safe_dump(options, f, default_flow_style=False)
                else:
                    json.dump(options, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            try: os.unlink(tmp)
            except OSError: pass
            raise

class PostMetaStore:
    """Read-only view of per-post metadata (``{post_id: {meta_key: value}}``)."""
    def __init__(self, path: Optional[str] = None, data: Optional[Mapping] = None):
        self.path = path
        self._data = dict(data) if data is not None else None

    @classmethod
    def from_mapping(cls, data: Mapping) -> 'PostMetaStore':
        return cls(data=data)

    def _posts(self) -> dict:
        if self._data is not None:
            return self._data
        return _load_json_or_yaml(self.path)

    def get_post_meta(self, post_id: Any, key: str) -> Any:
        posts = self._posts()
        meta = posts.get(str(post_id))
        if meta is None:
            meta = posts.get(post_id)
        if not isinstance(meta, dict):
            return ''
        return meta.get(key, '')


# ---------------- Settings -----------------
@dataclass(frozen=True)
class Settings:
    hide_featured_metabox: bool = False
    load_delay_ms: int = 0

    @classmethod
    def from_record(cls, record: Mapping) -> 'Settings':
        return cls(
            hide_featured_metabox=not _is_empty(record.get(HIDE_METABOX_FIELD)),
            load_delay_ms=absint(record.get(LOAD_DELAY_FIELD)),
        )

    def to_record(self) -> dict:
        return {
            HIDE_METABOX_FIELD: 1 if self.hide_featured_metabox else 0,
            LOAD_DELAY_FIELD: absint(self.load_delay_ms),
        }

def merge_settings(stored: Any) -> dict:
    """Stored record over defaults, key by key. Values are not type-checked."""
    merged = dict(DEFAULT_SETTINGS)
    if isinstance(stored, Mapping):
        merged.update(stored)
    return merged

def resolve_settings(store: SettingsStore) -> Settings:
    return Settings.from_record(merge_settings(store.get_option(OPTION_NAME, {})))


# ---------------- Nonces & users -----------------
@dataclass(frozen=True)
class User:
    user_id: int = 0
    login: str = ''
    capabilities: frozenset = frozenset()

    def can(self, capability: str) -> bool:
        return capability in self.capabilities

ANONYMOUS = User()

class NonceManager:
    """Action + user bound anti-forgery tokens.

    A token is valid for the tick it was issued in and the one after it; a tick
    is half of ``lifetime`` seconds.
    """
    def __init__(self, secret: Optional[str] = None, lifetime: int = DAY_IN_SECONDS, clock: Callable[[], float] = time.time):
        secret = secret or os.environ.get('STNVP_NONCE_SECRET') or uuid.uuid4().hex
        self._secret = secret.encode('utf-8')
        self.lifetime = lifetime
        self.clock = clock

    def tick(self) -> int:
        return int(math.ceil(self.clock() / (self.lifetime / 2)))

    def _digest(self, tick: int, action: str, user_id: int) -> str:
        msg = f"{tick}|{action}|{user_id}".encode('utf-8')
        return hmac.new(self._secret, msg, hashlib.sha256).hexdigest()[-12:-2]

    def create(self, action: str, user_id: int = 0) -> str:
        return self._digest(self.tick(), action, user_id)

    def verify(self, nonce: Any, action: str, user_id: int = 0) -> int:
        """1 when issued this tick, 2 when issued last tick, 0 when invalid."""
        if not isinstance(nonce, str) or not nonce:
            return 0
        given = nonce.encode('utf-8')
        tick = self.tick()
        if hmac.compare_digest(self._digest(tick, action, user_id).encode('utf-8'), given):
            return 1
        if hmac.compare_digest(self._digest(tick - 1, action, user_id).encode('utf-8'), given):
            return 2
        return 0

def save_settings_from_form(store: SettingsStore, form: Mapping, user: User, nonces: NonceManager,
                            events: Optional[EventLog] = None) -> Settings:
    """Validate a submitted settings form and persist it.

    Raises SecurityError (and writes nothing) on a missing/forged nonce or when
    the user may not manage options, and OptionsFileError when the existing
    options file cannot be parsed.
    """
    nonce = sanitize_text_field(form.get(NONCE_FIELD))
    if not nonces.verify(nonce, NONCE_ACTION, user.user_id):
        _emit(events, 'settings_rejected', reason='nonce', user_id=user.user_id)
        raise SecurityError('Security check failed')
    if not user.can(MANAGE_OPTIONS):
        _emit(events, 'settings_rejected', reason='capability', user_id=user.user_id)
        raise SecurityError('You do not have sufficient permissions to access this page.')
    settings = Settings(
        hide_featured_metabox=HIDE_METABOX_FIELD in form,
        load_delay_ms=absint(form.get(LOAD_DELAY_FIELD)),
    )
    record = settings.to_record()
    try:
        store.update_option(OPTION_NAME, record)
    except OptionsFileError as e:
        _emit(events, 'settings_save_failed', user_id=user.user_id, error=str(e))
        raise
    _emit(events, 'settings_saved', user_id=user.user_id, **record)
    return settings


# ---------------- Thumbnail lookup -----------------
def lookup_thumbnail(meta: Optional[PostMetaStore], post_id: Optional[int], attrs: Any,
                     schema_meta_key: str = DEFAULT_SCHEMA_META_KEY) -> str:
    """Thumbnail URL recorded for this embed by the STN Video Meta plugin, or ''.

    The stored schema JSON is only trusted once the post is marked processed
    and the embed key is among the processed keys.
    """
    if meta is None or not post_id:
        return ''
    if isinstance(attrs, str):
        attrs = parse_shortcode_attrs(attrs)
    if not isinstance(attrs, Mapping):
        return ''
    video_key = sanitize_text_field(attrs.get('key', ''))
    if not video_key:
        return ''
    if meta.get_post_meta(post_id, META_STATUS_KEY) != META_STATUS_OK:
        return ''
    stored_keys = meta.get_post_meta(post_id, META_KEYS_KEY)
    if isinstance(stored_keys, dict):
        stored_keys = list(stored_keys.values())
    elif not isinstance(stored_keys, (list, tuple)):
        stored_keys = [stored_keys]
    if video_key not in stored_keys:
        return ''
    schema_json = meta.get_post_meta(post_id, schema_meta_key)
    if not schema_json or not isinstance(schema_json, str):
        return ''
    try:
        schema = json.loads(schema_json)
    except ValueError:
        return ''
    if not isinstance(schema, dict):
        return ''
    thumbnails = schema.get('thumbnailUrl')
    if isinstance(thumbnails, dict):
        thumbnails = list(thumbnails.values())
    if not thumbnails or not isinstance(thumbnails, list):
        return ''
    first = thumbnails[0]
    if isinstance(first, str) and first:
        return force_https(first)
    return ''


# ---------------- Markup rewrite -----------------
@dataclass(frozen=True)
class RenderContext:
    is_admin: bool = False
    post_id: Optional[int] = None
    meta: Optional[PostMetaStore] = None

# Matches only the single script tag the [sendtonews] embed emits.
SCRIPT_TAG_RE = re.compile(r"""<script[^>]+src=["']?([^"']+)["']?[^>]*></script>""", re.IGNORECASE)

DEFERRED_LOADER_TEMPLATE = """<script>
(function() {
	function loadSTNVideo() {
		var script = document.createElement( "script" );
		script.src = "%(src)s";
		script.async = true;
		script.type = "text/javascript";
		script.setAttribute( "data-type", "s2nScript" );
		document.body.appendChild( script );
	}

	if ( "complete" === document.readyState ) {
		setTimeout( loadSTNVideo, %(delay)d );
	} else {
		window.addEventListener( "load", function() {
			setTimeout( loadSTNVideo, %(delay)d );
		});
	}
})();
</script>"""

PLACEHOLDER_STYLE = """<style>
.s2nPlayer {
	aspect-ratio: 16 / 9;
	background-color: rgba( 0, 0, 0, 0.05 );
	background-size: cover;
	background-position: center;
	background-repeat: no-repeat;
	background-image: var( --background-image );
	padding: 1px;
}
"""

THUMBNAIL_RULE = """.s2nPlayer.k-%(cls)s {
	--background-image: url( "%(url)s" );
}
"""

def build_deferred_loader(script_url: str, delay: int) -> str:
    return DEFERRED_LOADER_TEMPLATE % {'src': esc_js(script_url), 'delay': absint(delay)}

def build_style_block(video_key: Any = '', thumbnail: str = '') -> str:
    css = PLACEHOLDER_STYLE
    cls = sanitize_html_class(sanitize_text_field(video_key))
    url = esc_url_raw(force_https(thumbnail or ''), ('https',))
    if cls and url:
        css += THUMBNAIL_RULE % {'cls': cls, 'url': esc_css_string(url)}
    return css + '</style>'

def _rewrite(output: str, tag: str, attrs: Any, context: RenderContext, settings: Settings,
             schema_meta_key: str = DEFAULT_SCHEMA_META_KEY) -> tuple[str, str]:
    """Rewrite and also report why (``'rewritten'`` or the reason it was left alone)."""
    if tag != SHORTCODE_TAG:
        return output, 'tag_mismatch'
    if context.is_admin:
        return output, 'admin'
    delay = absint(settings.load_delay_ms)
    if delay == 0:
        return output, 'no_delay'
    if isinstance(attrs, str):
        attrs = parse_shortcode_attrs(attrs)
    if not isinstance(attrs, Mapping):
        attrs = {}
    thumbnail = lookup_thumbnail(context.meta, context.post_id, attrs, schema_meta_key)
    if not isinstance(output, str):
        return output, 'no_script'
    m = SCRIPT_TAG_RE.search(output)
    if not m:
        return output, 'no_script'
    style = build_style_block(attrs.get('key', ''), thumbnail)
    script_url = esc_url_raw(force_https(m.group(1)), ('https',))
    if not script_url:
        # Non-https player scripts are dropped, never loaded.
        return style + output[:m.start()] + output[m.end():], 'unsafe_url'
    loader = build_deferred_loader(script_url, delay)
    return style + output[:m.start()] + loader + output[m.end():], 'rewritten'

def rewrite_embed(output: str, tag: str, attrs: Any, context: Optional[RenderContext], settings: Settings,
                  schema_meta_key: str = DEFAULT_SCHEMA_META_KEY) -> str:
    """Defer the embed's player script and prepend the anti layout-shift styles.

    Returns ``output`` untouched for other shortcodes, admin renders, a zero
    delay, or output without a script tag. A player script whose URL is not
    https is removed instead of deferred.
    """
    return _rewrite(output, tag, attrs, context or RenderContext(), settings, schema_meta_key)[0]


# ---------------- Hook registry -----------------
class Hooks:
    """Named filter/action extension points, run in priority then registration order."""
    def __init__(self, callbacks: Optional[PluginCallbacks] = None, events: Optional[EventLog] = None):
        self.callbacks = callbacks
        self.events = events
        self._hooks: Dict[str, List[tuple[int, int, Callable]]] = {}
        self._counter = 0

    def add_filter(self, name: str, fn: Callable, priority: int = 10):
        self._counter += 1
        self._hooks.setdefault(name, []).append((priority, self._counter, fn))

    add_action = add_filter

    def _callbacks_for(self, name: str) -> List[Callable]:
        return [fn for _, _, fn in sorted(self._hooks.get(name, []), key=lambda e: (e[0], e[1]))]

    def _failed(self, name: str, fn: Callable, e: Exception):
        label = getattr(fn, '__qualname__', repr(fn))
        _invoke(self.callbacks, 'log', f"[hook] {name} callback {label} failed: {e}")
        _emit(self.events, 'hook_error', hook=name, callback=label, error=str(e))

    def apply_filters(self, name: str, value: Any, *args) -> Any:
        for fn in self._callbacks_for(name):
            try:
                value = fn(value, *args)
            except Exception as e:
                self._failed(name, fn, e)
        return value

    def do_action(self, name: str, *args) -> None:
        for fn in self._callbacks_for(name):
            try:
                fn(*args)
            except Exception as e:
                self._failed(name, fn, e)

def load_plugins(plugins_dir: Optional[str], hooks: Hooks, callbacks: Optional[PluginCallbacks] = None,
                 events: Optional[EventLog] = None) -> list:
    """Import every ``*.py`` in ``plugins_dir`` and call its ``register(hooks)``."""
    loaded = []
    if not plugins_dir or not os.path.isdir(plugins_dir):
        return loaded
    def log(msg: str): _invoke(callbacks, 'log', msg)
    for fn in sorted(os.listdir(plugins_dir)):
        if not fn.endswith('.py') or fn.startswith('_'): continue
        path = os.path.join(plugins_dir, fn); mod_name = f'_stnvp_plugin_{fn[:-3]}'
        try:
            spec = importlib.util.spec_from_file_location(mod_name, path)
            if not (spec and spec.loader): continue
            mod = importlib.util.module_from_spec(spec); spec.loader.exec_module(mod)  # type: ignore
            register = getattr(mod, 'register', None)
            if callable(register):
                register(hooks)
            loaded.append(mod)
            log(f"[plugin] loaded {fn}")
            _emit(events, 'plugin_loaded', name=fn)
        except Exception as e:
            log(f"[plugin] load failed {fn}: {e}")
            _emit(events, 'plugin_load_failed', name=fn, error=str(e))
    return loaded


# ---------------- Editor meta boxes -----------------
class MetaBoxRegistry:
    """Edit-screen side panels keyed by (screen, context, id)."""
    def __init__(self):
        self._boxes: Dict[tuple, str] = {}

    def add_meta_box(self, box_id: str, title: str, screen: str, context: str = 'advanced'):
        self._boxes[(screen, context, box_id)] = title

    def remove_meta_box(self, box_id: str, screen: str, context: str):
        self._boxes.pop((screen, context, box_id), None)

    def has_meta_box(self, box_id: str, screen: str, context: Optional[str] = None) -> bool:
        return any(b == box_id and s == screen and (context is None or c == context) for s, c, b in self._boxes)


# ---------------- Plugin wiring -----------------
SETTINGS_SECTION_TEMPLATE = """<style>
	.stn-performance-settings {
		margin-top: 30px;
		padding-top: 20px;
		border-top: 1px solid #ccd0d4;
	}
</style>
<div class="wrap stn-performance-settings">
	<h2>STN Video Settings</h2>
	<h2>Performance Options</h2>
	%(notice)s
	<form method="post" action="">
		<input type="hidden" id="%(nonce_field)s" name="%(nonce_field)s" value="%(nonce)s" />
		<table class="form-table" role="presentation">
			<tbody>
				<tr>
					<th scope="row"><label for="hide_featured_video_metabox">Featured Video Meta Box</label></th>
					<td>
						<fieldset>
							<label for="hide_featured_video_metabox">
								<input type="checkbox" id="hide_featured_video_metabox" name="hide_featured_video_metabox" value="1"%(checked)s />
								Hide Featured Video Player meta box from post and page edit screens
							</label>
							<p class="description">When enabled, the Featured Video Player meta box will not be displayed on post and page edit screens. This improves editor performance by preventing unnecessary script loading.</p>
						</fieldset>
					</td>
				</tr>
				<tr>
					<th scope="row"><label for="stn_video_load_delay">Video Player Load Delay</label></th>
					<td>
						<input type="number" id="stn_video_load_delay" name="stn_video_load_delay" value="%(delay)s" min="0" class="small-text" />
						<span>milliseconds</span>
						<p class="description">Delay loading of video player scripts to prioritize critical page resources. Set to 0 for immediate loading. Recommended: 1000-3000ms for improved page load performance.</p>
					</td>
				</tr>
			</tbody>
		</table>
		<p class="submit"><input type="submit" name="submit" id="submit" class="button button-primary" value="Save Performance Settings" /></p>
	</form>
</div>"""

SAVED_NOTICE = '<div class="notice notice-success is-dismissible"><p>Performance settings saved.</p></div>'

class Plugin:
    """Binds the settings, rewrite and metabox handlers to the host extension points."""
    def __init__(self, store: SettingsStore, hooks: Optional[Hooks] = None, meta: Optional[PostMetaStore] = None,
                 callbacks: Optional[PluginCallbacks] = None, events: Optional[EventLog] = None,
                 settings_url: str = f'/settings?page={SETTINGS_PAGE}'):
        self.store = store
        self.hooks = hooks or Hooks(callbacks, events)
        self.meta = meta
        self.callbacks = callbacks
        self.events = events
        self.settings_url = settings_url
        self.hooks.add_action('add_meta_boxes', self.maybe_remove_featured_video_metabox, 999)
        self.hooks.add_filter('do_shortcode_tag', self.delay_video_script_loading, 10)
        self.hooks.add_filter('plugin_action_links_stn-video-performance', self.add_plugin_action_links)

    def log(self, msg: str): _invoke(self.callbacks, 'log', msg)

    def get_settings(self) -> Settings:
        settings = self.hooks.apply_filters(OPTION_NAME, resolve_settings(self.store))
        return settings if isinstance(settings, Settings) else resolve_settings(self.store)

    def add_plugin_action_links(self, links: list) -> list:
        return [f'<a href="{esc_attr(self.settings_url)}">Settings</a>'] + list(links)

    def render_performance_settings_section(self, nonce: str, notice: bool = False) -> str:
        settings = self.get_settings()
        return SETTINGS_SECTION_TEMPLATE % {
            'notice': SAVED_NOTICE if notice else '',
            'nonce_field': NONCE_FIELD,
            'nonce': esc_attr(nonce),
            'checked': ' checked="checked"' if settings.hide_featured_metabox else '',
            'delay': esc_attr(settings.load_delay_ms),
        }

    def featured_video_screens(self) -> list:
        screens = self.hooks.apply_filters('stnvideo_featured_video_screens', list(DEFAULT_FEATURED_SCREENS))
        return list(screens) if isinstance(screens, (list, tuple)) else list(DEFAULT_FEATURED_SCREENS)

    def maybe_remove_featured_video_metabox(self, registry: MetaBoxRegistry):
        if not self.get_settings().hide_featured_metabox:
            return
        screens = self.featured_video_screens()
        for screen in screens:
            registry.remove_meta_box(FEATURED_VIDEO_METABOX, screen, 'side')
        _emit(self.events, 'metabox_removed', metabox=FEATURED_VIDEO_METABOX, screens=screens)

    def delay_video_script_loading(self, output: str, tag: str, attrs: Any = None, context: Optional[RenderContext] = None) -> str:
        context = context or RenderContext()
        if context.meta is None and self.meta is not None:
            context = replace(context, meta=self.meta)
        if tag != SHORTCODE_TAG:
            return output
        schema_key = self.hooks.apply_filters('stnvm_schema_meta_key', DEFAULT_SCHEMA_META_KEY)
        if not isinstance(schema_key, str) or not schema_key:
            schema_key = DEFAULT_SCHEMA_META_KEY
        result, reason = _rewrite(output, tag, attrs, context, self.get_settings(), schema_key)
        if reason == 'rewritten':
            self.log(f"[rewrite] deferred {SHORTCODE_TAG} embed (post {context.post_id})")
            _emit(self.events, 'embed_rewritten', post_id=context.post_id)
        elif reason == 'unsafe_url':
            self.log(f"[rewrite] dropped non-https {SHORTCODE_TAG} script (post {context.post_id})")
            _emit(self.events, 'embed_script_dropped', post_id=context.post_id)
        else:
            _emit(self.events, 'embed_unchanged', post_id=context.post_id, reason=reason)
        return result


# ---------------- Headless CLI -----------------
def _read_input(path: str) -> str:
    if path == '-':
        return sys.stdin.read()
    with open(path, 'r', encoding='utf-8') as f:
        return f.read()

def headless_main(argv: list[str]) -> int:
    """Rewrite one shortcode output from a file (or stdin) using the stored settings."""
    import argparse
    parser = argparse.ArgumentParser(description="Defer STN Video embed scripts (headless mode)")
    parser.add_argument('--headless', action='store_true', help=argparse.SUPPRESS)
    parser.add_argument('--input', default='-', help='File holding the rendered shortcode output (- for stdin)')
    parser.add_argument('--output', default=None, help='Write rewritten HTML here instead of stdout')
    parser.add_argument('--tag', default=SHORTCODE_TAG, help='Shortcode tag that produced the output')
    parser.add_argument('--attr', action='append', default=None, help='Shortcode attribute as key=value (repeatable)')
    parser.add_argument('--attrs', default=None, help='Raw shortcode attribute string, e.g. \'key="abc123"\'')
    parser.add_argument('--post-id', type=int, default=None, help='Current post ID (enables thumbnail lookup)')
    parser.add_argument('--meta-file', default=None, help='Post meta JSON file ({post_id: {key: value}})')
    parser.add_argument('--options-file', default=None, help='Options file holding the stored settings')
    parser.add_argument('--delay', type=int, default=None, help='Override the stored load delay (ms)')
    parser.add_argument('--admin', action='store_true', help='Render as an admin request (rewrite is skipped)')
    parser.add_argument('--show-settings', action='store_true', help='Print effective settings as JSON and exit')
    parser.add_argument('--plugins-dir', default=None, help='Directory of plugin .py files exposing register(hooks)')
    parser.add_argument('--config', default=None, help='Optional config file (JSON/YAML)')
    parser.add_argument('--json-logs', action='store_true', help='Emit machine-readable JSON log lines')
    parser.add_argument('--events-file', default=None, help='Append JSON events to this NDJSON file')
    args = parser.parse_args(argv)

    # Config merge: file values fill any argument still at its default
    if args.config:
        if not os.path.exists(args.config):
            print(f"[error] config file not found: {args.config}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        cfg_file = _load_json_or_yaml(args.config)
        defaults = {a.dest: a.default for a in parser._actions if hasattr(a, 'dest')}
        for k, v in cfg_file.items():
            k = k.replace('-', '_')
            if not hasattr(args, k): continue
            cur = getattr(args, k)
            if cur == defaults.get(k) or cur in (None, ''):
                setattr(args, k, v)

    class CLICallbacks(PluginCallbacks):  # pragma: no cover - simple console binding
        def log(self, message: str): print(message, file=sys.stderr)
    cb = CLICallbacks()
    events = EventLog(cb, json_logs=args.json_logs, events_file=args.events_file)
    store = SettingsStore(args.options_file)
    meta_path = args.meta_file or os.environ.get('STNVP_META_FILE')
    meta = PostMetaStore(meta_path) if meta_path else None

    hooks = Hooks(cb, events)
    plugin = Plugin(store, hooks, meta=meta, callbacks=cb, events=events)
    if args.delay is not None:
        hooks.add_filter(OPTION_NAME, lambda s: replace(s, load_delay_ms=absint(args.delay)), 99)
    load_plugins(args.plugins_dir, hooks, cb, events)

    settings = plugin.get_settings()
    events.emit('settings_resolved', **asdict(settings))
    if args.show_settings:
        print(json.dumps(asdict(settings)))
        return EXIT_SUCCESS

    try:
        text = _read_input(args.input)
    except OSError as e:
        print(f"[error] cannot read input: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    attrs: Dict[Any, str] = parse_shortcode_attrs(args.attrs) if args.attrs else {}
    for pair in args.attr or []:
        k, _, v = pair.partition('=')
        if k.strip():
            attrs[k.strip().lower()] = v
    context = RenderContext(is_admin=args.admin, post_id=args.post_id)
    result = hooks.apply_filters('do_shortcode_tag', text, args.tag, attrs, context)

    try:
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                f.write(result)
        else:
            sys.stdout.write(result)
    except OSError as e:
        print(f"[error] cannot write output: {e}", file=sys.stderr)
        return EXIT_GENERIC_FAILURE
    events.emit('summary', changed=(result != text), exit_code=EXIT_SUCCESS)
    return EXIT_SUCCESS
