"""
Traffic switch.

Cutover happens in a fixed order: write the proxy config, validate it,
reload the proxy, and only then move the live pointer. If the proxy rejects
the config the previous file is restored and the pointer is never touched,
so the pointer always names a slot the proxy actually routes to.
"""

import logging
import os
import re
from pathlib import Path
from string import Template

from slotdeploy.errors import CommandError, ProxyReloadError
from slotdeploy.shell import run_command
from slotdeploy.slots import LivePointer, Slot

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = """\
# Managed by slotdeploy; rewritten on every promotion.
map $$http_upgrade $$connection_upgrade {
    default upgrade;
    '' close;
}

upstream ${app_name}_backend {
    server 127.0.0.1:${upstream_port};
    keepalive 64;
}

server {
    listen 80;
    listen [::]:80;

    location /_next/static {
        alias ${static_root};
        expires ${cache_max_age}s;
        add_header Cache-Control "public, max-age=${cache_max_age}, immutable";
    }

    location / {
        proxy_pass http://${app_name}_backend;
        proxy_http_version 1.1;
        proxy_set_header Upgrade $$http_upgrade;
        proxy_set_header Connection $$connection_upgrade;
        proxy_set_header Host $$host;
        proxy_set_header X-Real-IP $$remote_addr;
        proxy_set_header X-Forwarded-For $$proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $$scheme;
    }
}
"""

_BACKEND_RE = re.compile(r"^\s*server\s+[^\s;]+:(\d+)\b[^;]*;", re.MULTILINE)


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp-{os.getpid()}")
    tmp.write_text(text)
    os.replace(tmp, path)


class NginxProxy:
    def __init__(
        self,
        config_path: Path,
        app_name: str,
        static_root: Path,
        test_command: str = "nginx -t",
        reload_command: str = "nginx -s reload",
        cache_max_age: int = 31536000,
        template_path: Path | None = None,
        timeout: int = 30,
        runner=run_command,
    ):
        self.config_path = Path(config_path)
        self.app_name = app_name
        self.static_root = Path(static_root)
        self.test_command = test_command
        self.reload_command = reload_command
        self.cache_max_age = cache_max_age
        self.template_path = Path(template_path) if template_path else None
        self.timeout = timeout
        self.runner = runner

    def render(self, port: int) -> str:
        template = DEFAULT_TEMPLATE
        if self.template_path is not None:
            template = self.template_path.read_text()
        return Template(template).substitute(
            app_name=self.app_name.replace("-", "_"),
            upstream_port=port,
            static_root=str(self.static_root),
            cache_max_age=self.cache_max_age,
        )

    def current_config(self) -> str | None:
        try:
            return self.config_path.read_text()
        except FileNotFoundError:
            return None

    def backend_port(self) -> int | None:
        text = self.current_config()
        if text is None:
            return None
        m = _BACKEND_RE.search(text)
        return int(m.group(1)) if m else None

    def _put_back(self, original: str | None) -> None:
        if original is None:
            self.config_path.unlink(missing_ok=True)
        else:
            _write_atomic(self.config_path, original)

    def apply(self, port: int) -> str | None:
        """Route the upstream to ``port``. Returns the config it replaced."""
        original = self.current_config()
        try:
            rendered = self.render(port)
        except (KeyError, ValueError, OSError) as e:
            raise ProxyReloadError(f"Cannot render proxy config: {e}") from e

        try:
            _write_atomic(self.config_path, rendered)
        except OSError as e:
            raise ProxyReloadError(f"Cannot write {self.config_path}: {e}") from e
        logger.info(f"  Wrote upstream 127.0.0.1:{port} -> {self.config_path}")

        try:
            self.runner(self.test_command, timeout=self.timeout)
        except CommandError as e:
            logger.error("  Proxy config test failed, restoring original config...")
            self._put_back(original)
            raise ProxyReloadError(f"Proxy config test failed: {e}") from e

        try:
            self.runner(self.reload_command, timeout=self.timeout)
        except CommandError as e:
            logger.error("  Proxy reload failed, restoring original config...")
            self._put_back(original)
            try:
                self.runner(self.reload_command, timeout=self.timeout)
            except CommandError as again:
                logger.critical(f"  Reload of restored config also failed: {again}")
            raise ProxyReloadError(f"Proxy reload failed: {e}") from e

        return original

    def restore(self, original: str | None) -> None:
        self._put_back(original)
        self.runner(self.test_command, timeout=self.timeout)
        self.runner(self.reload_command, timeout=self.timeout)
        logger.info("  Proxy rolled back to previous upstream")


class TrafficSwitch:
    def __init__(self, proxy: NginxProxy, pointer: LivePointer, ports: dict[Slot, int]):
        self.proxy = proxy
        self.pointer = pointer
        self.ports = ports

    def cutover(self, target: Slot, target_port: int) -> None:
        if self.ports[target] != target_port:
            raise ProxyReloadError(
                f"Port {target_port} is not slot {target}'s port ({self.ports[target]})"
            )
        original = self.proxy.apply(target_port)
        try:
            self.pointer.point_to(target)
        except OSError as e:
            logger.error(f"  Live pointer update failed ({e}), reverting proxy...")
            try:
                self.proxy.restore(original)
            except CommandError as restore_err:
                logger.critical(f"  CRITICAL: Proxy rollback failed: {restore_err}")
            raise ProxyReloadError(f"Live pointer update failed: {e}") from e
        logger.info(
            f"  Traffic now on slot {target} (port {target_port})",
            extra={"slot": str(target), "port": target_port},
        )

    def consistent(self) -> bool:
        """True when the proxy backend and the live pointer name the same slot."""
        live = self.pointer.read()
        if live is None:
            return False
        return self.proxy.backend_port() == self.ports[live]
