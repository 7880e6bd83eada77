"""Bundled workload and proxy templates.

Templates use ``string.Template`` syntax (``${NAME}``) so they can sit next to
docker compose interpolation, which uses the same token form; compose
variables that must survive rendering are written as ``$${NAME}``.
"""

from __future__ import annotations

from pathlib import Path
from string import Template
from typing import Any, Mapping, Optional

TEMPLATES_DIR = Path(__file__).parent

COMPOSE_FILE = "docker-compose.yml.tmpl"
ENV_FILE = "app.env.tmpl"
NGINX_HTTP = "nginx-http.conf.tmpl"
NGINX_TLS = "nginx-ssl.conf.tmpl"


def load_template(name: str, override: Optional[str] = None) -> Template:
    """Load a bundled template, or the file at `override` when given."""
    path = Path(override).expanduser() if override else TEMPLATES_DIR / name
    if not path.is_file():
        raise FileNotFoundError(f"Template not found: {path}")
    return Template(path.read_text(encoding="utf-8"))


def render_template(name: str, values: Mapping[str, Any], override: Optional[str] = None) -> str:
    """Render a template; a missing token raises ``KeyError``."""
    return load_template(name, override).substitute({k: "" if v is None else v for k, v in values.items()})
