"""
HTML fragments shared by every module.

Fragments are rendered with an autoescaping jinja2 environment; a fragment
that embeds another one receives it as Markup.
"""
import functools
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from jinja2 import DictLoader, Environment
from markupsafe import Markup

TPL_ERROR = """
<div class="block block-error">
  {% if title %}<h4>{{ title }}</h4>{% endif %}
  {% if errors|length == 1 %}<p>Error: {{ errors[0] }}</p>{% else %}
  <ul>{% for e in errors %}<li>{{ e }}</li>{% endfor %}</ul>
  {% endif %}
  {% if body %}{{ body }}{% endif %}
</div>
"""

TPL_SUCCESS = """
<div class="block block-ok">
  <h3>&#10003; {{ title }}</h3>
  <p>{{ message }}</p>
  {% if details %}<ul>{% for label, value in details %}<li>{{ label }}: {{ value }}</li>{% endfor %}</ul>{% endif %}
  {% if links %}<p>{% for href, label in links %}<a href="{{ href }}" class="button">{{ label }}</a> {% endfor %}</p>{% endif %}
</div>
"""

TPL_DENIED = """
<div class="block block-error">
  <h3>Access denied</h3>
  <p>You must be authenticated as {{ role }} or higher to access {{ label }}.</p>
  <p><a href="?q=auth/login" class="button">Login</a></p>
</div>
"""

TPL_OUTPUT = """
<div class="block">
  <h3>{{ title }}</h3>
  <pre><code>{{ lines|join('\n') }}</code></pre>
</div>
"""

TPL_MANAGER = """
<div class="module">
  <div class="module-menu">{% for href, label in menu %}<a href="{{ href }}" class="button">{{ label }}</a> {% endfor %}</div>
  <p class="muted module-state">{{ state }}</p>
  <div class="module-content">{{ content }}</div>
</div>
"""

_env = Environment(
  loader=DictLoader({
    "error.html": TPL_ERROR,
    "success.html": TPL_SUCCESS,
    "denied.html": TPL_DENIED,
    "output.html": TPL_OUTPUT,
    "manager.html": TPL_MANAGER,
  }),
  autoescape=True,
  trim_blocks=True,
  lstrip_blocks=True,
)


@functools.lru_cache(maxsize=None)
def _compile(source: str):
  return _env.from_string(source)


def render(name: str, **values) -> Markup:
  return Markup(_env.get_template(name).render(**values))


def render_source(source: str, **values) -> Markup:
  return Markup(_compile(source).render(**values))


def error_block(errors: Union[str, Sequence[str]], title: Optional[str] = None, body=None) -> Markup:
  if isinstance(errors, str):
    errors = [errors]
  return render("error.html", errors=list(errors), title=title, body=body)


def validation_block(errors: Sequence[str], body=None) -> Markup:
  return error_block(errors, title="Please correct the following errors:", body=body)


def success_block(title: str, message: str, details: Iterable[Tuple[str, str]] = (),
                  links: Iterable[Tuple[str, str]] = ()) -> Markup:
  return render("success.html", title=title, message=message, details=list(details), links=list(links))


def access_denied(label: str, role: str) -> Markup:
  return render("denied.html", label=label, role=role)


def failure_block(request_id: str) -> Markup:
  return error_block(f"Unexpected internal error (request {request_id}). The failure has been logged.")


def output_block(title: str, lines: List[str]) -> Markup:
  return render("output.html", title=title, lines=lines)


def manager(state: str, content, menu: Iterable[Tuple[str, str]]) -> Markup:
  return render("manager.html", state=state, content=Markup(content), menu=list(menu))


def options(values: Iterable[str], selected: Optional[str] = None, labels=None) -> List[Tuple[str, str, bool]]:
  """(value, label, selected) triples for <select> fields."""
  labels = labels or {}
  return [(v, labels.get(v, v), v == selected) for v in values]


def human_bytes(v) -> str:
  v = float(v)
  for u in ["B", "KiB", "MiB", "GiB", "TiB"]:
    if v < 1024 or u == "TiB":
      return f"{v:.1f} {u}" if u != "B" else f"{int(v)} B"
    v /= 1024
  return f"{v} B"
