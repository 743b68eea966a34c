"""Kustomize-backed manifest renderer over extracted version archives."""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import RenderError
from .interfaces import ManifestRenderer
from .models import App, KotsAppSpec

logger = logging.getLogger(__name__)

# repl{{ Func "arg" }} and {{repl Func "arg" }}
TEMPLATE_PATTERN = re.compile(r"repl\{\{\s*(.*?)\s*\}\}|\{\{repl\s+(.*?)\s*\}\}")
CALL_PATTERN = re.compile(r'^(\w+)(?:\s+"([^"]*)")?$')


class KustomizeRenderer(ManifestRenderer):
    """
    Renders manifests from archives laid out as `<archive_root>/<app_id>/<sequence>/`.

    Each archive holds `upstream/` (including the kots.io Application spec and
    `userdata/config.yaml`), `overlays/midstream/` and one directory per
    downstream under `overlays/downstreams/`.
    """

    def __init__(self, archive_root: str, timeout: float = 60.0):
        """
        Initialize renderer.

        Args:
            archive_root: Directory holding extracted version archives
            timeout: Seconds to wait for kustomize
        """
        self.archive_root = Path(archive_root)
        self.timeout = timeout

    def archive_dir(self, app_id: str, sequence: int) -> Path:
        path = self.archive_root / app_id / str(sequence)
        if not path.is_dir():
            raise RenderError(f"archive for app {app_id} sequence {sequence} not found")
        return path

    async def render(
        self, app: App, sequence: int, downstream_name: str, kustomize_version: str
    ) -> bytes:
        archive = self.archive_dir(app.id, sequence)
        overlay = archive / "overlays" / "downstreams" / downstream_name
        binary = f"kustomize{kustomize_version}"

        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                "build",
                str(overlay),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except FileNotFoundError as e:
            raise RenderError(f"{binary} not found") from e
        except asyncio.TimeoutError as e:
            proc.kill()
            raise RenderError(f"{binary} build timed out after {self.timeout}s") from e

        if proc.returncode != 0:
            raise RenderError(f"kustomize stderr: {stderr.decode(errors='replace')!r}")

        return stdout

    async def get_app_spec(self, app_id: str, sequence: int) -> Optional[KotsAppSpec]:
        archive = self.archive_dir(app_id, sequence)
        doc = self._find_document(archive / "upstream", "Application")
        if doc is None:
            return None

        spec = doc.get("spec") or {}
        return KotsAppSpec(
            kubectl_version=spec.get("kubectlVersion") or "",
            kustomize_version=spec.get("kustomizeVersion") or "",
            additional_namespaces=spec.get("additionalNamespaces") or [],
            status_informers=spec.get("statusInformers") or [],
        )

    async def get_image_pull_secret(self, app_id: str, sequence: int) -> str:
        archive = self.archive_dir(app_id, sequence)
        secret_path = archive / "overlays" / "midstream" / "secret.yaml"
        if not secret_path.exists():
            return ""
        return secret_path.read_text()

    async def render_informer(self, app: App, sequence: int, informer: str) -> str:
        """
        Evaluate template functions in a status informer.

        Supports `ConfigOption "name"` and `Namespace`. Any other function
        raises RenderError.
        """
        archive = self.archive_dir(app.id, sequence)
        config_values = self._load_config_values(archive)

        def substitute(match: re.Match) -> str:
            expression = match.group(1) or match.group(2)
            call = CALL_PATTERN.match(expression.strip())
            if call is None:
                raise RenderError(f"unsupported template expression {expression!r}")

            func, arg = call.groups()
            if func == "ConfigOption" and arg is not None:
                return config_values.get(arg, "")
            if func == "Namespace" and arg is None:
                return ""
            raise RenderError(f"unsupported template function {func!r}")

        return TEMPLATE_PATTERN.sub(substitute, informer).strip()

    def _load_config_values(self, archive: Path) -> dict[str, str]:
        doc = self._find_document(archive / "upstream" / "userdata", "ConfigValues")
        if doc is None:
            return {}

        values = (doc.get("spec") or {}).get("values") or {}
        result = {}
        for name, item in values.items():
            item = item or {}
            value = item.get("value")
            if value is None:
                value = item.get("default", "")
            result[name] = str(value)
        return result

    def _find_document(self, directory: Path, kind: str) -> Optional[dict[str, Any]]:
        """First kots.io document of `kind` found under `directory`."""
        if not directory.is_dir():
            return None

        for path in sorted(directory.rglob("*.y*ml")):
            try:
                docs = list(yaml.safe_load_all(path.read_text()))
            except yaml.YAMLError as e:
                logger.warning(f"Skipping unparseable file {path}: {e}")
                continue

            for doc in docs:
                if not isinstance(doc, dict):
                    continue
                if doc.get("kind") == kind and str(doc.get("apiVersion", "")).startswith("kots.io/"):
                    return doc
        return None
