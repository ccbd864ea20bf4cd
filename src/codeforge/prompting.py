from __future__ import annotations

import re
from urllib.parse import urlparse

FRAMEWORK_LABELS = {
    "react": "React (function components and hooks, TypeScript/TSX)",
    "next": "Next.js page component (React, TypeScript/TSX)",
    "vue": "Vue 3 (a single component object using the Options or Composition API)",
    "svelte": "plain JavaScript that mimics a Svelte component's structure",
    "angular": "plain JavaScript that mimics an Angular component's structure",
    "vanilla": "vanilla JavaScript manipulating the DOM",
}

_FENCE_RE = re.compile(r"^\s*```[\w.+-]*[ \t]*\n(.*?)\n?```\s*$", re.DOTALL)


def is_url(text: str) -> bool:
    """Return ``True`` when ``text`` is a single absolute http(s) URL."""
    candidate = text.strip()
    if not candidate or any(ch.isspace() for ch in candidate):
        return False
    parsed = urlparse(candidate)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def build_system_prompt(framework: str) -> str:
    label = FRAMEWORK_LABELS.get(framework, FRAMEWORK_LABELS["react"])
    return f"""
You are a senior front-end engineer generating runnable application code.

**Target**

Write a single self-contained file using {label}.

**Constraints**

1. Output only source code. No prose before or after the code.
2. Define the root component as `App` (or use `export default`).
3. Do not import local files; only the framework runtime is available.
4. Style with Tailwind utility classes; no external stylesheets.
5. Keep all state in the component; no network calls or browser storage.
"""


def build_user_prompt(raw_input: str, framework: str) -> str:
    text = raw_input.strip()
    if is_url(text):
        task = (
            f"Recreate the user interface of the website at {text} as closely as possible.\n"
            "Reproduce its layout, sections, navigation and visual hierarchy with placeholder content."
        )
    else:
        task = f"Build the following application:\n{text}"

    return f"{task}\n\nFramework: {framework}\nReturn the complete code for one file.\n"


def strip_code_fence(text: str) -> str:
    """Remove one surrounding Markdown code fence when the whole text is fenced."""
    fenced = _FENCE_RE.match(text)
    if fenced:
        return fenced.group(1)
    return text
