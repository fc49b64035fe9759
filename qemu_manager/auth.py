"""
Authentication pages: login, registration, logout and first-admin bootstrap.

These are plain two-segment routes (``auth/<page>``), not a module: they are
reachable anonymously and manage the identity keys in the session.
"""
import logging

from qemu_manager import views
from qemu_manager.errors import ValidationError
from qemu_manager.roles import Role

logger = logging.getLogger(__name__)

TPL_LOGIN = """
<h2>Sign in</h2>
{% if error %}<div class="error">{{ error }}</div>{% endif %}
<form method="post" action="?q=auth/login">
  <label>Username</label>
  <input name="username" value="{{ username or '' }}" required />
  <label>Password</label>
  <input name="password" type="password" required />
  <button type="submit">Sign in</button>
</form>
<p class="muted">No account yet? <a href="?q=auth/register">Register</a></p>
"""

TPL_ACCOUNT = """
<h2>{{ title }}</h2>
{% if intro %}<p class="muted">{{ intro }}</p>{% endif %}
{{ errors }}
<form method="post" action="{{ action }}">
  <label>Username</label>
  <input name="username" value="{{ form.get('username', '') }}" required />
  <label>Email</label>
  <input name="email" type="email" value="{{ form.get('email', '') }}" required />
  <label>Password</label>
  <input name="password" type="password" required />
  <label>Confirm password</label>
  <input name="password_confirm" type="password" required />
  <button type="submit">{{ submit }}</button>
</form>
"""


class AuthPages:
  def __init__(self, services):
    self.identity = services.identity

  def routes(self):
    return [
      ("auth/login", self.login),
      ("auth/register", self.register),
      ("auth/logout", self.logout),
      ("auth/bootstrap-admin", self.bootstrap_admin),
    ]

  def login(self, ctx, args):
    if ctx.principal is not None:
      return views.success_block(
        "Already authenticated",
        f"You are signed in as {ctx.principal.username} ({ctx.principal.role}).",
        links=[("?q=auth/logout", "Logout")],
      )
    if not ctx.submitted:
      return views.render_source(TPL_LOGIN)

    username = (ctx.form.get("username") or "").strip()
    password = ctx.form.get("password") or ""
    principal = self.identity.login(ctx.session, username, password)
    if principal is None:
      return views.render_source(TPL_LOGIN, error="Invalid username or password", username=username)
    ctx.principal = principal
    return views.success_block("Signed in", f"Welcome, {principal.username}.", links=[("?q=/", "Continue")])

  def _account_form(self, ctx, title, action, submit, errors=None, intro=None):
    return views.render_source(
      TPL_ACCOUNT,
      title=title,
      intro=intro,
      action=action,
      submit=submit,
      form=ctx.form,
      errors=views.validation_block(errors) if errors else "",
    )

  def register(self, ctx, args):
    if not ctx.submitted:
      return self._account_form(ctx, "Create account", "?q=auth/register", "Register")
    try:
      self.identity.register(ctx.form, role=Role.VIEWER)
    except ValidationError as exc:
      return self._account_form(ctx, "Create account", "?q=auth/register", "Register", exc.errors)
    logger.info(f"[{ctx.request_id}] auth.register username={ctx.form.get('username', '').strip()}")
    return views.success_block(
      "Account created",
      "Your account has viewer access. Sign in to continue.",
      links=[("?q=auth/login", "Login")],
    )

  def logout(self, ctx, args):
    self.identity.logout(ctx.session)
    ctx.principal = None
    return views.success_block("Signed out", "Your session has ended.", links=[("?q=auth/login", "Login")])

  def bootstrap_admin(self, ctx, args):
    if not self.identity.needs_bootstrap_admin():
      return views.success_block("Setup already complete", "An administrator account already exists.",
                                 links=[("?q=auth/login", "Login")])
    title = "Create the first administrator"
    intro = "No administrator exists yet. The account created here gets full access."
    if not ctx.submitted:
      return self._account_form(ctx, title, "?q=auth/bootstrap-admin", "Create administrator", intro=intro)
    try:
      self.identity.register(ctx.form, role=Role.ADMIN)
    except ValidationError as exc:
      return self._account_form(ctx, title, "?q=auth/bootstrap-admin", "Create administrator", exc.errors, intro)

    username = (ctx.form.get("username") or "").strip()
    logger.warning(f"[{ctx.request_id}] auth.bootstrap_admin created username={username}")
    ctx.principal = self.identity.login(ctx.session, username, ctx.form.get("password") or "")
    return views.success_block("Administrator created", f"Signed in as {username}.", links=[("?q=/", "Continue")])
