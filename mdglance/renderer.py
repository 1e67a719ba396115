"""Markdown / PlantUML to HTML for the preview pane."""

from __future__ import annotations

import base64
import hashlib
import html
import json
import os
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path
from string import Template

from markdown_it import MarkdownIt
from mdit_py_plugins.dollarmath import dollarmath_plugin

from .document import DocumentSnapshot
from .sections import Section, split_sections

PLANTUML_TIMEOUT_SECONDS = 20
PLANTUML_FENCE_LANGUAGES = frozenset({"plantuml", "puml", "uml"})
OPEN_SECTION_COUNT = 1
MATHJAX_CDN_URL = "https://cdn.jsdelivr.net/npm/mathjax@3/es5/tex-svg.js"
MERMAID_CDN_URL = "https://cdn.jsdelivr.net/npm/mermaid@11/dist/mermaid.min.js"
EMPTY_STATE_MESSAGE = "Drop a markdown file here or press Ctrl+O to open one."

_PACKAGE_DIR = Path(__file__).resolve().parent
_VENDOR_DIR = _PACKAGE_DIR / "vendor"


class PlantUmlError(RuntimeError):
    pass


def _locate_asset(env_var: str, *fallbacks: Path) -> Path | None:
    """First existing file: the env override, then the bundled/system copies."""
    override = os.environ.get(env_var, "").strip()
    candidates = [Path(override).expanduser()] if override else []
    candidates.extend(fallbacks)
    for candidate in candidates:
        try:
            if candidate.is_file():
                return candidate.resolve()
        except OSError:
            continue
    return None


def _script_sources(local: Path | None, cdn_url: str) -> list[str]:
    if local is None:
        return [cdn_url]
    return [local.as_uri(), cdn_url]


def _plantuml_failure_summary(stderr_text: str) -> str:
    # PlantUML's -pipe mode prints "ERROR", then the line number, then the message.
    messages = [part.strip() for part in stderr_text.splitlines() if part.strip()]
    if not messages:
        return "unknown error"
    if len(messages) > 2 and messages[0].upper() == "ERROR" and messages[1].isdigit():
        return f"line {messages[1]}: {messages[2]}"
    return "\n".join(messages[:8])


def run_plantuml(jar_path: Path, source: str, timeout: float = PLANTUML_TIMEOUT_SECONDS) -> str:
    """Render PlantUML source to SVG text with a local `java -jar plantuml.jar`."""
    command = ["java", "-Djava.awt.headless=true", "-jar", str(jar_path), "-pipe", "-tsvg", "-charset", "UTF-8"]
    try:
        completed = subprocess.run(
            command,
            input=source,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise PlantUmlError(f"PlantUML gave up after {timeout:g}s") from exc
    except OSError as exc:
        raise PlantUmlError(f"PlantUML could not start: {exc}") from exc

    if completed.returncode != 0:
        raise PlantUmlError(f"PlantUML failed: {_plantuml_failure_summary(completed.stderr or '')}")
    svg = (completed.stdout or "").strip()
    if "<svg" not in svg.lower():
        raise PlantUmlError("PlantUML produced no SVG")
    return svg


class MarkdownRenderer:
    """Turns document snapshots into complete HTML pages for the web view."""

    def __init__(self, *, plantuml_enabled: bool = False) -> None:
        self.plantuml_enabled = plantuml_enabled
        self._mathjax_script = _locate_asset(
            "MDGLANCE_MATHJAX_JS",
            _VENDOR_DIR / "mathjax" / "es5" / "tex-svg.js",
            Path("/usr/share/javascript/mathjax/es5/tex-svg.js"),
        )
        self._mermaid_script = _locate_asset(
            "MDGLANCE_MERMAID_JS",
            _VENDOR_DIR / "mermaid" / "mermaid.min.js",
            Path("/usr/share/javascript/mermaid/mermaid.min.js"),
        )
        self._plantuml_jar = _locate_asset(
            "PLANTUML_JAR",
            _VENDOR_DIR / "plantuml" / "plantuml.jar",
            Path.cwd() / "plantuml.jar",
        )
        # Keyed by a digest of the normalized diagram source.
        self._diagram_cache: dict[str, str] = {}

        self._md = MarkdownIt("commonmark", {"html": True, "linkify": False, "typographer": True})
        self._md.enable(["table", "strikethrough"])
        # dollarmath tokenizes $...$ before emphasis, so TeX underscores survive.
        self._md.use(dollarmath_plugin)
        self._fallback_fence = self._md.renderer.rules["fence"]
        self._md.add_render_rule("fence", self._render_fence)
        self._md.add_render_rule("math_inline", self._render_math_inline)
        self._md.add_render_rule("math_block", self._render_math_block)

    # markdown-it render rules; MathJax typesets the delimiters client side.

    def _render_math_inline(self, tokens, idx, options, env) -> str:
        return "$" + html.escape(tokens[idx].content) + "$"

    def _render_math_block(self, tokens, idx, options, env) -> str:
        tex = html.escape((tokens[idx].content or "").strip("\n"))
        return f'<div class="mdglance-math-block">$$\n{tex}\n$$</div>\n'

    def _render_fence(self, tokens, idx, options, env) -> str:
        token = tokens[idx]
        words = token.info.split()
        language = words[0].lower() if words else ""
        if language == "mermaid":
            return self._mermaid_html(token.content)
        if self.plantuml_enabled and language in PLANTUML_FENCE_LANGUAGES:
            return self._plantuml_html(token.content)
        return self._fallback_fence(tokens, idx, options, env)

    def mathjax_script_sources(self) -> list[str]:
        return _script_sources(self._mathjax_script, MATHJAX_CDN_URL)

    def mermaid_script_sources(self) -> list[str]:
        return _script_sources(self._mermaid_script, MERMAID_CDN_URL)

    def plantuml_setup_error(self) -> str | None:
        if self._plantuml_jar is None:
            return "plantuml.jar not found; set PLANTUML_JAR or copy it to vendor/plantuml/"
        if shutil.which("java") is None:
            return "PlantUML needs a Java runtime on PATH"
        return None

    @staticmethod
    def prepare_plantuml_source(code: str) -> str:
        """Normalize line endings and wrap bare diagrams in @startuml/@enduml."""
        text = code.replace("\r\n", "\n").strip("\n")
        if not text:
            return "@startuml\n@enduml\n"
        for line in text.splitlines():
            if line.strip().lower().startswith("@start"):
                return text + "\n"
        return "@startuml\n" + text + "\n@enduml\n"

    def render_plantuml_data_uri(self, code: str) -> tuple[str | None, str | None]:
        """Render one diagram; returns (data URI, None) or (None, error text)."""
        source = self.prepare_plantuml_source(code)
        digest = hashlib.sha1(source.encode("utf-8", errors="replace")).hexdigest()
        if digest in self._diagram_cache:
            return self._diagram_cache[digest], None

        problem = self.plantuml_setup_error()
        if problem is not None:
            return None, problem
        try:
            svg = run_plantuml(self._plantuml_jar, source)
        except PlantUmlError as exc:
            return None, str(exc)

        uri = "data:image/svg+xml;base64," + base64.b64encode(svg.encode("utf-8")).decode("ascii")
        self._diagram_cache[digest] = uri
        return uri, None

    def _plantuml_html(self, code: str) -> str:
        uri, problem = self.render_plantuml_data_uri(code)
        if uri is not None:
            return f'<div class="mdglance-fence"><img class="plantuml" src="{uri}" alt="PlantUML diagram"/></div>\n'
        return (
            '<div class="mdglance-fence plantuml-error">'
            f'<div class="plantuml-error-message">{html.escape(problem or "PlantUML rendering failed")}</div>'
            f'<pre><code class="language-plantuml">{html.escape(code)}</code></pre>'
            "</div>\n"
        )

    @staticmethod
    def _mermaid_html(code: str) -> str:
        source = code.replace("\r\n", "\n").strip("\n")
        return f'<div class="mdglance-fence"><div class="mermaid">\n{html.escape(source)}\n</div></div>\n'

    def render_body(self, markdown_text: str) -> str:
        return self._md.render(markdown_text)

    def render_sections_body(self, sections: Sequence[Section]) -> str:
        """One collapsible block per section; only the first starts open."""
        parts: list[str] = []
        for index, section in enumerate(sections):
            open_attr = " open" if index < OPEN_SECTION_COUNT else ""
            title = html.escape(section.title or "Untitled")
            parts.append(
                f'<details class="mdglance-section level-{section.level}" '
                f'data-start-line="{section.start_line}"{open_attr}>'
                f"<summary>{title}</summary>\n"
                f"{self.render_body(section.body)}"
                "</details>\n"
            )
        return "".join(parts)

    def render_plantuml_file_body(self, source: str) -> str:
        if self.plantuml_enabled:
            return self._plantuml_html(source)
        notice = html.escape("PlantUML rendering is disabled; enable [extensions] plantuml in config.toml.")
        return (
            f'<p class="mdglance-notice">{notice}</p>'
            f'<pre><code class="language-plantuml">{html.escape(source)}</code></pre>\n'
        )

    def render_snapshot(self, snapshot: DocumentSnapshot, sections: Sequence[Section] | None = None) -> str:
        """Full HTML page for whatever the snapshot holds.

        Large documents are sectioned from the snapshot's own content unless
        `sections` is given.
        """
        if not snapshot.is_open:
            return self.placeholder_html(EMPTY_STATE_MESSAGE)
        if sections is None:
            sections = split_sections(snapshot.content) if snapshot.is_large else ()
        if snapshot.is_plantuml:
            body = self.render_plantuml_file_body(snapshot.content)
        elif sections:
            body = self.render_sections_body(sections)
        else:
            body = self.render_body(snapshot.content)
        return self.render_page(body, snapshot.display_name)

    def render_page(self, body: str, title: str) -> str:
        return _PAGE_TEMPLATE.substitute(
            title=html.escape(title),
            css=_PAGE_CSS,
            mathjax_sources=json.dumps(self.mathjax_script_sources()),
            mermaid_sources=json.dumps(self.mermaid_script_sources()),
            body=body,
        )

    @staticmethod
    def placeholder_html(message: str) -> str:
        """Empty-state page shown before any file is open."""
        return _PLACEHOLDER_TEMPLATE.substitute(message=html.escape(message))


_PAGE_CSS = """
:root {
  color-scheme: light dark;
  --text: #24292f;
  --page: #ffffff;
  --muted-bg: #f3f4f6;
  --rule: #d0d7de;
  --accent: #0969da;
}
@media (prefers-color-scheme: dark) {
  :root {
    --text: #d1d5db;
    --page: #0d1117;
    --muted-bg: #161b22;
    --rule: #30363d;
    --accent: #58a6ff;
  }
}
body {
  margin: 0;
  background: var(--page);
  color: var(--text);
  font: 16px/1.6 system-ui, "Noto Sans", sans-serif;
}
main { max-width: 920px; margin: 0 auto; padding: 1rem 1.5rem 3rem; }
a { color: var(--accent); }
code, pre { font-family: ui-monospace, "Noto Sans Mono", monospace; font-size: 0.92em; }
code { background: var(--muted-bg); padding: 0.1em 0.3em; border-radius: 3px; }
pre { background: var(--muted-bg); border: 1px solid var(--rule); border-radius: 6px; padding: 0.75rem; overflow-x: auto; }
pre code { background: none; padding: 0; }
table { border-collapse: collapse; margin: 0.75rem 0; }
th, td { border: 1px solid var(--rule); padding: 0.35rem 0.6rem; }
.mermaid svg, img.plantuml { max-width: 100%; height: auto; }
.plantuml-error-message { color: #cf222e; font-weight: 600; white-space: pre-wrap; margin-bottom: 0.4rem; }
.mdglance-notice { color: #9a6700; }
details.mdglance-section { border-bottom: 1px solid var(--rule); padding: 0.25rem 0; }
details.mdglance-section > summary { cursor: pointer; font-weight: 600; }
details.level-2 > summary { padding-left: 1rem; }
details.level-3 > summary { padding-left: 2rem; }
details.level-4 > summary, details.level-5 > summary, details.level-6 > summary { padding-left: 3rem; }
"""

# $$ is a literal dollar for string.Template.
_PAGE_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8"/>
<title>$title</title>
<style>$css</style>
<script>
window.MathJax = {
  tex: {inlineMath: [["$$", "$$"]], displayMath: [["$$$$", "$$$$"]]},
  options: {skipHtmlTags: ["script", "noscript", "style", "textarea", "pre", "code"]}
};
function mdglanceLoadScript(src) {
  return new Promise((resolve, reject) => {
    const tag = document.createElement("script");
    tag.src = src;
    tag.onload = resolve;
    tag.onerror = () => reject(new Error("cannot load " + src));
    document.head.appendChild(tag);
  });
}
async function mdglanceLoadFirst(sources, isReady) {
  for (const src of sources) {
    try {
      await mdglanceLoadScript(src);
      if (isReady()) return true;
    } catch (err) {
      console.warn("mdglance:", err.message);
    }
  }
  return false;
}
document.addEventListener("DOMContentLoaded", async () => {
  const text = document.body.textContent || "";
  if (document.querySelector(".mdglance-math-block") || text.includes("$$")) {
    mdglanceLoadFirst($mathjax_sources, () => !!window.MathJax.typesetPromise);
  }
  if (document.querySelector(".mermaid")) {
    if (await mdglanceLoadFirst($mermaid_sources, () => !!window.mermaid)) {
      const dark = window.matchMedia("(prefers-color-scheme: dark)").matches;
      mermaid.initialize({startOnLoad: false, theme: dark ? "dark" : "default"});
      await mermaid.run({querySelector: ".mermaid"});
    }
  }
});
</script>
</head>
<body><main>
$body
</main></body>
</html>
"""
)

_PLACEHOLDER_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8"/>
<style>
html, body { margin: 0; height: 100%; background: #0d1117; color: #8b949e; font: 15px system-ui, sans-serif; }
main { height: 100%; display: grid; place-items: center; }
</style>
</head>
<body><main>$message</main></body>
</html>
"""
)
