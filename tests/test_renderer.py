"""Tests for the kustomize renderer."""

import pytest

from kotsadm_deployer.errors import RenderError
from kotsadm_deployer.models import App
from kotsadm_deployer.renderer import KustomizeRenderer

APPLICATION = """\
apiVersion: kots.io/v1beta1
kind: Application
metadata:
  name: my-app
spec:
  kubectlVersion: "1.24"
  kustomizeVersion: "3"
  additionalNamespaces:
    - monitoring
  statusInformers:
    - deployment/web
    - repl{{ ConfigOption "db_kind" }}
"""

CONFIG_VALUES = """\
apiVersion: kots.io/v1beta1
kind: ConfigValues
metadata:
  name: my-app
spec:
  values:
    db_kind:
      value: statefulset/postgres
    cache:
      default: deployment/redis
"""


@pytest.fixture
def app():
    return App(id="app-1", slug="my-app", name="My App")


@pytest.fixture
def archive_root(tmp_path):
    archive = tmp_path / "app-1" / "4"
    (archive / "upstream" / "userdata").mkdir(parents=True)
    (archive / "overlays" / "midstream").mkdir(parents=True)
    (archive / "overlays" / "downstreams" / "this-cluster").mkdir(parents=True)

    (archive / "upstream" / "deployment.yaml").write_text(
        "apiVersion: apps/v1\nkind: Deployment\nmetadata:\n  name: web\n"
    )
    (archive / "upstream" / "kots-app.yaml").write_text(APPLICATION)
    (archive / "upstream" / "userdata" / "config.yaml").write_text(CONFIG_VALUES)
    return tmp_path


@pytest.fixture
def renderer(archive_root):
    return KustomizeRenderer(str(archive_root), timeout=5)


class TestKustomizeRenderer:
    """Test archive reads and informer templating."""

    @pytest.mark.asyncio
    async def test_app_spec(self, renderer):
        spec = await renderer.get_app_spec("app-1", 4)

        assert spec.kubectl_version == "1.24"
        assert spec.kustomize_version == "3"
        assert spec.additional_namespaces == ["monitoring"]
        assert spec.status_informers == ["deployment/web", 'repl{{ ConfigOption "db_kind" }}']

    @pytest.mark.asyncio
    async def test_app_spec_missing(self, renderer, archive_root):
        (archive_root / "app-1" / "4" / "upstream" / "kots-app.yaml").unlink()

        assert await renderer.get_app_spec("app-1", 4) is None

    @pytest.mark.asyncio
    async def test_missing_archive(self, renderer):
        with pytest.raises(RenderError):
            await renderer.get_app_spec("app-1", 99)

    @pytest.mark.asyncio
    async def test_image_pull_secret(self, renderer, archive_root):
        assert await renderer.get_image_pull_secret("app-1", 4) == ""

        secret = "apiVersion: v1\nkind: Secret\nmetadata:\n  name: my-app-registry\n"
        (archive_root / "app-1" / "4" / "overlays" / "midstream" / "secret.yaml").write_text(secret)

        assert await renderer.get_image_pull_secret("app-1", 4) == secret

    @pytest.mark.asyncio
    async def test_informer_config_option(self, renderer, app):
        informer = await renderer.render_informer(app, 4, 'repl{{ ConfigOption "db_kind" }}')

        assert informer == "statefulset/postgres"

    @pytest.mark.asyncio
    async def test_informer_config_default(self, renderer, app):
        informer = await renderer.render_informer(app, 4, '{{repl ConfigOption "cache" }}')

        assert informer == "deployment/redis"

    @pytest.mark.asyncio
    async def test_informer_plain(self, renderer, app):
        assert await renderer.render_informer(app, 4, " deployment/web ") == "deployment/web"

    @pytest.mark.asyncio
    async def test_informer_unknown_function(self, renderer, app):
        with pytest.raises(RenderError):
            await renderer.render_informer(app, 4, 'repl{{ LicenseFieldValue "x" }}')

    @pytest.mark.asyncio
    async def test_render_missing_binary(self, renderer, app):
        with pytest.raises(RenderError, match="not found"):
            await renderer.render(app, 4, "this-cluster", "-missing-for-tests")
