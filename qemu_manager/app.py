import logging
import uuid

from flask import Flask, g, render_template_string, request, session
from jinja2 import DictLoader

from qemu_manager import views
from qemu_manager.auth import AuthPages
from qemu_manager.config import Config
from qemu_manager.context import RequestContext, Services
from qemu_manager.modules import MODULES
from qemu_manager.router import Router
from qemu_manager.storage import Store

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = ("password", "password_confirm")

# ---------- HTML (inline templates) ----------

TPL_BASE = """
<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8" />
<meta name="viewport" content="width=device-width, initial-scale=1" />
<title>{{ title }}</title>
<style>
  :root {
    --bg: #f4f7fa;
    --panel: #ffffffcc;
    --border: #cfd9e3;
    --accent: #07b36d;
    --danger: #c62828;
    --ok: #2e7d32;
    --text: #0e2336;
    --muted: #5c6f80;
    --mono: 'SFMono-Regular', Menlo, Consolas, monospace;
  }
  * { box-sizing: border-box; }
  body { font-family: system-ui,-apple-system,Segoe UI,Roboto,Helvetica,Arial,sans-serif; margin:0; padding:0 1.25rem 0; background: radial-gradient(circle at 15% 20%, #ffffff, var(--bg)); color: var(--text); min-height:100vh; }
  .topbar { position:sticky; top:0; background:linear-gradient(90deg,#0d1e30,#14384f); padding:0.9rem 1rem; margin:0 -1.25rem 1rem; display:flex; justify-content:space-between; align-items:center; color:#e9f5ff; }
  .topbar a { color:#9feaf9; margin-left:.6rem; }
  a { text-decoration:none; color: var(--accent); }
  a:hover { text-decoration:underline; }
  .card { max-width:1100px; margin:0 auto 1.2rem; border:1px solid var(--border); background:var(--panel); border-radius:14px; padding:1.4rem 1.5rem 1.8rem; }
  h2,h3 { margin-top:0; font-weight:600; letter-spacing:.5px; }
  input, select, button { font: inherit; }
  input, select { width:100%; padding:.55rem .65rem; border:1px solid var(--border); border-radius:8px; background:#fff; margin-bottom:.7rem; }
  button, .button { padding:.5rem 1rem; border:1px solid var(--accent); background:linear-gradient(180deg,var(--accent),#049158); color:#fff; border-radius:10px; font-weight:600; display:inline-block; }
  table { width:100%; border-collapse:collapse; margin-bottom:1rem; }
  th, td { text-align:left; padding:.4rem .5rem; border-bottom:1px solid var(--border); }
  .block { border:1px solid var(--border); border-radius:10px; padding:.8rem 1rem; margin-bottom:1rem; background:#fff; }
  .block-error { border-color:var(--danger); color:var(--danger); }
  .block-ok { border-color:var(--ok); }
  .error { color: var(--danger); margin-bottom:.8rem; font-weight:500; }
  .module-menu { margin-bottom:.6rem; }
  .muted { color:var(--muted); }
  code, pre { font-family:var(--mono); font-size:.85rem; }
  pre { background:#ecf2f6; padding:.6rem; border-radius:6px; overflow-x:auto; }
</style>
</head>
<body>
  <div class="topbar">
    <div><strong>{{ title }}</strong></div>
    <div>
      {% if principal %}<span class="muted">{{ principal.username }} ({{ principal.role }})</span>{% endif %}
      {% for href, label in menu %}<a href="{{ href }}">{{ label }}</a>{% endfor %}
    </div>
  </div>
  <div class="card">
    {% block content %}{% endblock %}
  </div>
</body>
</html>
"""

TPL_PAGE = """
{% extends "base.html" %}
{% block content %}
{% if content %}
{{ content }}
{% else %}
<h2>{{ title }}</h2>
<p class="muted">Manage QEMU disk images, virtual machines and their networking.</p>
{% endif %}
{% endblock %}
"""


def req_id():
  return getattr(g, "request_id", "-")


def _sanitize_form(form):
  return {k: ("***" if k in SENSITIVE_FIELDS else v) for k, v in (form or {}).items()}


def build_router(services: Services) -> Router:
  router = Router()
  router.register_all(AuthPages(services).routes())
  for module in MODULES:
    router.register_all(module(services).routes())
  router.freeze()
  return router


def build_menu(services: Services, principal):
  menu = [("?q=/", "Home")]
  if services.identity.needs_bootstrap_admin():
    menu.append(("?q=auth/bootstrap-admin", "Bootstrap Admin"))
  if principal is not None:
    menu += [(f"?q={m.name}/manage", m.label) for m in MODULES]
    menu.append(("?q=auth/logout", "Logout"))
  else:
    menu += [("?q=auth/login", "Login"), ("?q=auth/register", "Register")]
  return menu


def create_app(config: Config = None, store: Store = None, invoker=None) -> Flask:
  config = config or Config.from_env()
  if store is None:
    store = Store.from_url(config.database_url)
  store.init_schema()
  services = Services.build(config, store, invoker)
  router = build_router(services)

  app = Flask(__name__)
  app.secret_key = config.secret_key
  app.jinja_loader = DictLoader({"base.html": TPL_BASE})

  @app.before_request
  def assign_request_id():
    g.request_id = uuid.uuid4().hex[:8]
    g.principal = services.identity.resolve(session)

  @app.route("/", methods=["GET", "POST"])
  def index():
    path = request.args.get("q", "")
    ctx = RequestContext(
      services=services,
      principal=g.principal,
      session=session,
      method=request.method,
      form=request.form.to_dict(),
      request_id=req_id(),
    )
    logger.info(f"[{req_id()}] {request.method} q={path!r} form={_sanitize_form(ctx.form)}")
    route, args = router.resolve(path)
    try:
      content = route.handler(ctx, args)
    except Exception:
      logger.exception(f"[{req_id()}] route {route.key!r} failed")
      content = views.failure_block(req_id())
    return render_template_string(
      TPL_PAGE,
      title=config.site_title,
      content=content,
      principal=ctx.principal,
      menu=build_menu(services, ctx.principal),
    )

  @app.route("/healthz")
  def healthz():
    return {"ok": True, "images_dir": str(config.images_dir), "platform": config.platform}

  logger.info(f"Routes: {', '.join(sorted(router.routes()))}")
  return app
