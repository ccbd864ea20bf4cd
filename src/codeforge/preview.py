"""Synthesize sandboxed preview documents and manage their lifecycle."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from codeforge.errors import PreviewRuntimeError, PreviewSynthesisError
from codeforge.models import FRAMEWORKS, PreviewSession
from codeforge.sandbox import SandboxHandle, SandboxHost

logger = logging.getLogger(__name__)

ViewportMode = Literal["desktop", "tablet", "mobile"]

REACT_VERSION = "18.3.1"
VUE_VERSION = "3.4.38"
BABEL_VERSION = "7.25.6"
TAILWIND_VERSION = "3.4.5"

REACT_SCRIPTS = (
    f"https://unpkg.com/react@{REACT_VERSION}/umd/react.production.min.js",
    f"https://unpkg.com/react-dom@{REACT_VERSION}/umd/react-dom.production.min.js",
)
VUE_SCRIPTS = (f"https://unpkg.com/vue@{VUE_VERSION}/dist/vue.global.prod.js",)
BABEL_SCRIPT = f"https://unpkg.com/@babel/standalone@{BABEL_VERSION}/babel.min.js"
TAILWIND_SCRIPT = f"https://cdn.tailwindcss.com/{TAILWIND_VERSION}"

CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'none'",
        "script-src 'unsafe-inline' 'unsafe-eval' https://unpkg.com https://cdn.tailwindcss.com https://cdn.jsdelivr.net",
        "style-src 'unsafe-inline'",
        "img-src data: blob: https:",
        "font-src data: https:",
        "connect-src 'none'",
        "form-action 'none'",
        "base-uri 'none'",
    ]
)

ENTRY_CANDIDATES = ("App", "Home", "Main")
DEFAULT_EXPORT_BINDING = "__codeforge_default__"

REACT_HOOKS = (
    "useState",
    "useEffect",
    "useRef",
    "useMemo",
    "useCallback",
    "useReducer",
    "useContext",
    "useLayoutEffect",
    "useId",
    "createContext",
    "Fragment",
)
VUE_API = (
    "ref",
    "reactive",
    "computed",
    "watch",
    "watchEffect",
    "onMounted",
    "onUnmounted",
    "defineComponent",
    "h",
    "nextTick",
)


class Runtime(BaseModel):
    model_config = ConfigDict(frozen=True)

    mount: Literal["react", "vue", "vanilla"]
    scripts: tuple[str, ...]
    globals: tuple[str, ...] = ()
    destructure: dict[str, tuple[str, ...]] = {}
    babel: dict[str, Any]


_TS_ONLY = [["typescript", {"allExtensions": True}]]
_TSX = [["typescript", {"allExtensions": True, "isTSX": True}], "react"]

RUNTIMES: dict[str, Runtime] = {
    "react": Runtime(
        mount="react",
        scripts=(*REACT_SCRIPTS, BABEL_SCRIPT, TAILWIND_SCRIPT),
        globals=("React", "ReactDOM"),
        destructure={"React": REACT_HOOKS},
        babel={"presets": _TSX, "filename": "App.tsx", "sourceType": "script"},
    ),
    "vue": Runtime(
        mount="vue",
        scripts=(*VUE_SCRIPTS, BABEL_SCRIPT, TAILWIND_SCRIPT),
        globals=("Vue",),
        destructure={"Vue": VUE_API},
        babel={"presets": _TS_ONLY, "filename": "App.ts", "sourceType": "script"},
    ),
    "vanilla": Runtime(
        mount="vanilla",
        scripts=(BABEL_SCRIPT, TAILWIND_SCRIPT),
        babel={"presets": _TS_ONLY, "filename": "app.ts", "sourceType": "script"},
    ),
}

# next renders as a React page; svelte/angular sources have no in-browser compiler here.
FRAMEWORK_RUNTIME = {
    "react": "react",
    "next": "react",
    "vue": "vue",
    "svelte": "vanilla",
    "angular": "vanilla",
    "vanilla": "vanilla",
}


class Viewport(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: str
    height: str


VIEWPORTS: dict[str, Viewport] = {
    "desktop": Viewport(width="100%", height="600px"),
    "tablet": Viewport(width="768px", height="600px"),
    "mobile": Viewport(width="375px", height="600px"),
}

_IDENT = r"[A-Za-z_$][\w$]*"
_EXPORT_DEFAULT_DECL_RE = re.compile(
    rf"^(\s*)export\s+default\s+((?:async\s+)?function\b\s*\*?\s*({_IDENT})?|class\b\s*(?!extends\b)({_IDENT})?)",
    re.MULTILINE,
)
_EXPORT_DEFAULT_NAME_RE = re.compile(rf"^\s*export\s+default\s+({_IDENT})\s*;?\s*$", re.MULTILINE)
_EXPORT_DEFAULT_RE = re.compile(r"^(\s*)export\s+default\s+", re.MULTILINE)
_EXPORT_LIST_RE = re.compile(r"^\s*export\s*\{[^}]*\}(?:\s*from\s*['\"][^'\"]*['\"])?\s*;?[ \t]*$", re.MULTILINE)
_EXPORT_DECL_RE = re.compile(
    r"^(\s*)export\s+(?=(?:async\s+)?function\b|class\b|const\b|let\b|var\b|interface\b|type\b|enum\b|abstract\b)",
    re.MULTILINE,
)
_IMPORT_RE = re.compile(r"^\s*import\s+(?:type\s+)?[\w$*{}\s,]+?\s+from\s*['\"][^'\"]+['\"]\s*;?[ \t]*$", re.MULTILINE)
_SIDE_EFFECT_IMPORT_RE = re.compile(r"^\s*import\s*['\"][^'\"]+['\"]\s*;?[ \t]*$", re.MULTILINE)
_HTML_DOCUMENT_RE = re.compile(r"^\s*(?:<!doctype\s+html|<html[\s>])", re.IGNORECASE)
_HEAD_OPEN_RE = re.compile(r"<head(?:\s[^>]*)?>", re.IGNORECASE)
_DOCTYPE_RE = re.compile(r"^\s*<!doctype[^>]*>", re.IGNORECASE)
_RESERVED = {"function", "class", "async", "await", "new", "typeof", "void"}


def _binding_re(name: str) -> re.Pattern[str]:
    return re.compile(
        rf"(?:^|[^\w$.])(?:(?:async\s+)?function\s*\*?\s*|class\s+|(?:const|let|var)\s+){re.escape(name)}(?![\w$])"
    )


_CANDIDATE_RES = {name: _binding_re(name) for name in ENTRY_CANDIDATES}


def resolve_entry_component(code: str) -> str | None:
    """Pick the component a preview should mount.

    Policy, first match wins:

    1. An explicit ``export default`` (named function/class, a bare identifier,
       or an anonymous expression bound to ``__codeforge_default__``).
    2. A binding named ``App``, then ``Home``, then ``Main``.
    3. ``None``; the preview shows a "Component not found" placeholder.
    """
    declared = _EXPORT_DEFAULT_DECL_RE.search(code)
    if declared:
        return declared.group(3) or declared.group(4) or DEFAULT_EXPORT_BINDING

    named = _EXPORT_DEFAULT_NAME_RE.search(code)
    if named and named.group(1) not in _RESERVED:
        return named.group(1)

    if _EXPORT_DEFAULT_RE.search(code):
        return DEFAULT_EXPORT_BINDING

    for name in ENTRY_CANDIDATES:
        if _CANDIDATE_RES[name].search(code):
            return name
    return None


def prepare_source(code: str) -> str:
    """Rewrite module syntax so the source runs as a classic script."""
    source = _IMPORT_RE.sub("", code)
    source = _SIDE_EFFECT_IMPORT_RE.sub("", source)
    source = _EXPORT_LIST_RE.sub("", source)

    def _default_decl(match: re.Match[str]) -> str:
        indent, declaration = match.group(1), match.group(2)
        if match.group(3) or match.group(4):
            return f"{indent}{declaration}"
        return f"{indent}var {DEFAULT_EXPORT_BINDING} = {declaration}"

    source = _EXPORT_DEFAULT_DECL_RE.sub(_default_decl, source)
    source = _EXPORT_DEFAULT_NAME_RE.sub("", source)
    source = _EXPORT_DEFAULT_RE.sub(lambda m: f"{m.group(1)}var {DEFAULT_EXPORT_BINDING} = ", source)
    return _EXPORT_DECL_RE.sub(lambda m: m.group(1), source)


def is_html_document(code: str) -> bool:
    return bool(_HTML_DOCUMENT_RE.match(code))


def synthesize_document(code: str, framework: str, render_id: int = 0) -> str:
    """Build the self-contained sandbox document for ``code``.

    Raises:
        PreviewSynthesisError: Unknown framework or empty source.
    """
    if framework not in FRAMEWORK_RUNTIME:
        raise PreviewSynthesisError(
            f"Unsupported framework: {framework!r}",
            details={"supported": list(FRAMEWORKS)},
        )
    if not code.strip():
        raise PreviewSynthesisError("Nothing to preview: source code is empty")

    if FRAMEWORK_RUNTIME[framework] == "vanilla" and is_html_document(code):
        return _synthesize_html_document(code, render_id)

    runtime = RUNTIMES[FRAMEWORK_RUNTIME[framework]]
    entry = resolve_entry_component(code)
    config = {
        "renderId": render_id,
        "framework": framework,
        "mount": runtime.mount,
        "entry": entry,
        "globals": list(runtime.globals),
        "destructure": {lib: list(names) for lib, names in runtime.destructure.items()},
        "babel": runtime.babel,
    }
    replacements = {
        "RENDER_ID": str(render_id),
        "CSP": CONTENT_SECURITY_POLICY,
        "CSS": _load_frontend_asset("preview.css"),
        "CAPTURE_JS": _load_frontend_asset("capture.js"),
        "RUNTIME_SCRIPTS": "\n".join(f'  <script src="{_escape_html(url)}"></script>' for url in runtime.scripts),
        "SOURCE_JSON": _json_for_script(prepare_source(code)),
        "CONFIG_JSON": _json_for_script(config),
        "BOOT_JS": _load_frontend_asset("preview.js"),
    }
    return _render_template(_load_frontend_asset("preview.html"), replacements)


def _synthesize_html_document(code: str, render_id: int) -> str:
    """Inject the security policy and error capture into a full HTML document."""
    injected = (
        f'<meta name="codeforge-render-id" content="{render_id}">'
        f'<meta http-equiv="Content-Security-Policy" content="{CONTENT_SECURITY_POLICY}">'
        f"<style>{_load_frontend_asset('preview.css')}</style>"
        f"<script>{_load_frontend_asset('capture.js')}</script>"
    )
    anchor = _HEAD_OPEN_RE.search(code) or _DOCTYPE_RE.match(code)
    split = anchor.end() if anchor else 0
    document = code[:split] + injected + code[split:]
    # capture.js reads the render id from the root element, else from the meta tag.
    return re.sub(
        r"<html(?=[\s>])",
        f'<html data-render-id="{render_id}"',
        document,
        count=1,
        flags=re.IGNORECASE,
    )


def render_host_page(session: PreviewSession, viewport: str = "desktop", title: str = "Preview") -> str:
    """Render the embedding page with viewport switcher for a session."""
    if session.sandbox_url is None:
        raise PreviewSynthesisError("Session has no sandbox to embed")
    size = VIEWPORTS[viewport]
    replacements = {
        "TITLE": _escape_html(title),
        "SANDBOX_URL": _escape_html(session.sandbox_url),
        "RENDER_ID": str(session.render_id),
        "VIEWPORT": viewport,
        "VIEWPORTS_JSON": _json_for_script({mode: vp.model_dump() for mode, vp in VIEWPORTS.items()}),
        "WIDTH": size.width,
        "HEIGHT": size.height,
        "IFRAME": sandbox_iframe(session.sandbox_url),
    }
    return _render_template(_load_frontend_asset("host.html"), replacements)


def sandbox_iframe(url: str, title: str = "Live Preview") -> str:
    """Return the embedding ``<iframe>`` for a sandbox document.

    ``allow-scripts`` without ``allow-same-origin`` gives the document an
    opaque origin: it can run code but cannot reach the host's storage,
    cookies, or DOM.
    """
    return (
        f'<iframe src="{_escape_html(url)}" sandbox="allow-scripts" '
        f'referrerpolicy="no-referrer" title="{_escape_html(title)}"></iframe>'
    )


SessionListener = Callable[[PreviewSession], None]
RuntimeErrorListener = Callable[[PreviewRuntimeError], None]


class PreviewRenderer:
    """Render code into a fresh sandbox per call and track the current session.

    Signals from a sandbox are tagged with the render id they were issued for;
    signals from superseded or torn-down renders are ignored. Load errors move
    the session to ``error``; runtime errors thrown by the previewed code are
    recorded in ``runtime_error`` and leave ``status`` alone.

    Args:
        host: Backing sandbox host.
        viewport: Initial viewport mode.
        load_timeout: Seconds to wait for a load signal before marking the
            session as failed. Needs a running event loop; ``None`` disables it.
        on_change: Called with every new session value.
        on_runtime_error: Called with each runtime error from the live render.
    """

    def __init__(
        self,
        host: SandboxHost,
        viewport: ViewportMode = "desktop",
        load_timeout: float | None = None,
        on_change: SessionListener | None = None,
        on_runtime_error: RuntimeErrorListener | None = None,
    ):
        if viewport not in VIEWPORTS:
            raise ValueError(f"Unknown viewport mode: {viewport}")
        self.host = host
        self.viewport: ViewportMode = viewport
        self.load_timeout = load_timeout
        self.on_change = on_change
        self.on_runtime_error = on_runtime_error
        self.session: PreviewSession | None = None
        self.load_signals = 0
        self._render_seq = 0
        self._live_render: int | None = None
        self._handle: SandboxHandle | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def status(self) -> str:
        return self.session.status if self.session else "idle"

    def render(self, code: str, framework: str) -> PreviewSession:
        """Tear down the current sandbox and start a new one for ``code``."""
        self._teardown_sandbox()
        self._render_seq += 1
        render_id = self._render_seq

        try:
            document = synthesize_document(code, framework, render_id=render_id)
        except PreviewSynthesisError as exc:
            logger.info("Preview synthesis failed for render %d: %s", render_id, exc)
            return self._publish(
                PreviewSession(
                    render_id=render_id,
                    source_code=code,
                    framework=framework,
                    status="error",
                    last_error=str(exc),
                )
            )

        self._live_render = render_id
        self._publish(
            PreviewSession(
                render_id=render_id,
                source_code=code,
                framework=framework,
                sandbox_document=document,
                status="loading",
            )
        )

        try:
            handle = self.host.mount(
                document,
                on_load=lambda: self._accept_load(render_id),
                on_error=lambda message: self._accept_error(render_id, message),
                on_runtime_error=lambda message: self._accept_runtime_error(render_id, message),
            )
        except PreviewSynthesisError as exc:
            self._live_render = None
            return self._update(render_id, status="error", last_error=str(exc))

        if self._live_render != render_id:
            # Torn down or superseded from inside a signal callback.
            handle.destroy()
            return self.session
        self._handle = handle
        self._update(render_id, sandbox_url=handle.url)
        if self.session.status == "loading":
            self._arm_timeout(render_id)
        return self.session

    def refresh(self) -> PreviewSession | None:
        """Re-synthesize and recreate the sandbox with the current inputs."""
        if self.session is None:
            return None
        return self.render(self.session.source_code, self.session.framework)

    def set_viewport(self, mode: ViewportMode) -> Viewport:
        """Change the container size; the sandbox is left untouched."""
        if mode not in VIEWPORTS:
            raise ValueError(f"Unknown viewport mode: {mode}")
        self.viewport = mode
        return VIEWPORTS[mode]

    def container_html(self) -> str:
        size = VIEWPORTS[self.viewport]
        inner = sandbox_iframe(self.session.sandbox_url) if self.session and self.session.sandbox_url else ""
        return (
            f'<div class="preview-container" style="width: {size.width}; max-width: 100%; '
            f'height: {size.height};">{inner}</div>'
        )

    def teardown(self) -> None:
        """Destroy the sandbox and mark the session idle."""
        render_id = self._live_render
        self._teardown_sandbox()
        if self.session is not None and render_id == self.session.render_id:
            self._publish(self.session.model_copy(update={"status": "idle", "sandbox_url": None}))

    def _accept_load(self, render_id: int) -> bool:
        if not self._is_current(render_id, "load"):
            return False
        self._cancel_timer()
        self.load_signals += 1
        self._update(render_id, status="ready", last_error=None)
        return True

    def _accept_error(self, render_id: int, message: str) -> bool:
        if not self._is_current(render_id, "error"):
            return False
        self._cancel_timer()
        logger.info("Preview render %d failed to load: %s", render_id, message)
        self._update(render_id, status="error", last_error=message)
        return True

    def _accept_runtime_error(self, render_id: int, message: str) -> bool:
        if not self._is_current(render_id, "runtime-error", accept=("loading", "ready")):
            return False
        error = PreviewRuntimeError(message, details={"render_id": render_id})
        logger.info("Preview render %d raised: %s", render_id, error)
        self._update(render_id, runtime_error=message)
        if self.on_runtime_error:
            self.on_runtime_error(error)
        return True

    def _is_current(self, render_id: int, signal: str, accept: tuple[str, ...] = ("loading",)) -> bool:
        if render_id != self._live_render or self.session is None or self.session.status not in accept:
            logger.debug("Ignoring stale %s signal from render %d", signal, render_id)
            return False
        return True

    def _arm_timeout(self, render_id: int) -> None:
        if self.load_timeout is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; preview load timeout disabled")
            return
        self._timer = loop.call_later(
            self.load_timeout,
            self._accept_error,
            render_id,
            f"Preview did not finish loading within {self.load_timeout:g}s",
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _teardown_sandbox(self) -> None:
        self._cancel_timer()
        self._live_render = None
        if self._handle is not None:
            self._handle.destroy()
            self._handle = None

    def _update(self, render_id: int, **changes: Any) -> PreviewSession:
        if self.session is None or self.session.render_id != render_id:
            return self.session
        return self._publish(self.session.model_copy(update=changes))

    def _publish(self, session: PreviewSession) -> PreviewSession:
        self.session = session
        if self.on_change:
            self.on_change(session)
        return session


def _json_for_script(value: Any) -> str:
    """Serialize ``value`` as JSON that cannot close an enclosing ``<script>``."""
    return (
        json.dumps(value, ensure_ascii=False)
        .replace("&", "\\u0026")
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


_TOKEN_RE = re.compile(r"\{\{([A-Z_]+)\}\}")


def _render_template(template: str, replacements: dict[str, str]) -> str:
    """Replace ``{{TOKEN}}`` placeholders in one pass; inserted values are not rescanned."""
    return _TOKEN_RE.sub(lambda m: replacements.get(m.group(1), m.group(0)), template)


@lru_cache(maxsize=None)
def _load_frontend_asset(filename: str) -> str:
    """Load and cache static template assets from ``templates/``."""
    asset_path = Path(__file__).with_name("templates") / filename
    return asset_path.read_text(encoding="utf-8")


def _escape_html(value: Any) -> str:
    """Escape a value for direct inclusion in HTML text content or attributes."""
    text = str(value)
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )
