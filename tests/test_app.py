import pytest

from qemu_manager.app import build_router, create_app
from qemu_manager.auth import AuthPages
from qemu_manager.errors import DuplicateRouteError
from qemu_manager.router import DEFAULT_KEY

ADMIN = {
  "username": "root", "email": "root@example.org",
  "password": "s3cretpass", "password_confirm": "s3cretpass",
}
VIEWER = {
  "username": "guest", "email": "guest@example.org",
  "password": "guestpass1", "password_confirm": "guestpass1",
}


@pytest.fixture
def app(config, store, invoker):
  invoker.respond("qemu-img --version", stdout="qemu-img version 8.2.2\n")
  app = create_app(config, store=store, invoker=invoker)
  app.config["TESTING"] = True
  return app


@pytest.fixture
def client(app):
  return app.test_client()


def page(response):
  assert response.status_code == 200
  return response.get_data(as_text=True)


class TestRouting:
  def test_healthz(self, client, config):
    data = client.get("/healthz").get_json()
    assert data == {"ok": True, "images_dir": str(config.images_dir), "platform": "x86_64"}

  def test_home_offers_bootstrap_while_no_admin(self, client):
    html = page(client.get("/"))
    assert "?q=auth/bootstrap-admin" in html
    assert "?q=auth/login" in html
    assert "?q=image/manage" not in html

  def test_unknown_path_renders_home(self, client):
    html = page(client.get("/?q=does/not/exist"))
    assert "Manage QEMU disk images" in html

  def test_router_registers_every_module_and_page(self, services):
    router = build_router(services)
    keys = set(router.routes())
    assert {"auth/login", "auth/register", "auth/logout", "auth/bootstrap-admin"} <= keys
    assert {"image", "image/manage", "machine", "machine/manage", "network", "network/manage"} <= keys
    assert DEFAULT_KEY in keys
    with pytest.raises(DuplicateRouteError):
      router.register("extra", lambda ctx, args: "")

  def test_anonymous_module_access_is_denied(self, client, store):
    html = page(client.post("/?q=machine/manage/create", data={"name": "vm1", "cpu": "1", "ram": "512"}))
    assert "Access denied" in html
    assert store.count("virtual_machine") == 0


class TestAuthFlow:
  def test_bootstrap_admin_logs_in_and_unlocks_modules(self, client):
    html = page(client.post("/?q=auth/bootstrap-admin", data=ADMIN))
    assert "Administrator created" in html
    assert "?q=auth/bootstrap-admin" not in html

    html = page(client.get("/?q=image/manage"))
    assert "Disk images" in html
    assert "qemu-img version 8.2.2" in html
    assert "root (admin)" in html

  def test_bootstrap_only_once(self, client, store):
    client.post("/?q=auth/bootstrap-admin", data=ADMIN)
    html = page(client.post("/?q=auth/bootstrap-admin", data=dict(ADMIN, username="root2", email="r2@example.org")))
    assert "Setup already complete" in html
    assert store.count("users") == 1

  def test_bootstrap_validation_errors(self, client, store):
    html = page(client.post("/?q=auth/bootstrap-admin", data=dict(ADMIN, password_confirm="other")))
    assert "password_confirm: Password confirmation does not match" in html
    assert store.count("users") == 0

  def test_viewer_cannot_manage_machines(self, client):
    html = page(client.post("/?q=auth/register", data=VIEWER))
    assert "Account created" in html
    html = page(client.post("/?q=auth/login", data={"username": "guest", "password": "guestpass1"}))
    assert "Welcome, guest." in html
    html = page(client.get("/?q=machine/manage"))
    assert "You must be authenticated as operator or higher to access Virtual Machines." in html

  def test_login_failure_and_logout(self, client):
    client.post("/?q=auth/bootstrap-admin", data=ADMIN)
    page(client.get("/?q=auth/logout"))
    html = page(client.post("/?q=auth/login", data={"username": "root", "password": "wrong-pass"}))
    assert "Invalid username or password" in html
    html = page(client.post("/?q=auth/login", data={"username": "root", "password": "s3cretpass"}))
    assert "Welcome, root." in html
    html = page(client.get("/?q=auth/login"))
    assert "Already authenticated" in html
    html = page(client.get("/?q=auth/logout"))
    assert "Signed out" in html
    assert "Access denied" in page(client.get("/?q=network/manage"))

  def test_password_is_not_logged(self, client, caplog):
    with caplog.at_level("INFO", logger="qemu_manager.app"):
      client.post("/?q=auth/login", data={"username": "root", "password": "hunter22"})
    assert "hunter22" not in caplog.text
    assert "'password': '***'" in caplog.text


class TestModulesOverHttp:
  def test_create_image_end_to_end(self, client, invoker, images_dir):
    def create_file(argv):
      if argv[:2] == ["qemu-img", "create"]:
        open(argv[4], "wb").close()

    invoker.on_call = create_file
    client.post("/?q=auth/bootstrap-admin", data=ADMIN)
    html = page(client.post(
      "/?q=image/manage/create",
      data={"image-name": "test1", "image-size": "1024", "image-format": "qcow2"},
    ))
    assert "Disk image created" in html
    assert (images_dir / "test1.img").exists()

  def test_image_links_survive_reserved_characters(self, client, invoker, images_dir):
    (images_dir / "a&b+c #1.img").write_text("x")
    client.post("/?q=auth/bootstrap-admin", data=ADMIN)
    link = "?q=image/manage/info/a%26b%2Bc%20%231.img"
    assert f'href="{link}"' in page(client.get("/?q=image/manage/list"))
    page(client.get("/" + link))
    assert invoker.calls_for("qemu-img", "info") == [["qemu-img", "info", str(images_dir.resolve() / "a&b+c #1.img")]]

  def test_unexpected_route_failure_renders_failure_block(self, config, store, invoker, monkeypatch):
    def explode(self, ctx, args):
      raise RuntimeError("kaboom")

    monkeypatch.setattr(AuthPages, "register", explode)
    app = create_app(config, store=store, invoker=invoker)
    html = page(app.test_client().get("/?q=auth/register"))
    assert "Unexpected internal error" in html
    assert "kaboom" not in html
