"""Image builder: repository Dockerfile, nixpacks, or a generated Dockerfile."""

from __future__ import annotations

import json
from pathlib import Path

import structlog

from deploy_agent.domain.errors import BuildError, CommandError, CommandNotFoundError
from deploy_agent.domain.ports.services import ImageBuilder, ProcessRunner


logger = structlog.get_logger(__name__)

GENERATED_DOCKERFILE = "Dockerfile.deploy-agent"

# Checked in order; the first dependency present decides the type.
NODE_FRAMEWORKS = [
    ("next", "nextjs"),
    ("react", "react"),
    ("express", "nodejs"),
    ("vue", "vue"),
    ("@angular/core", "angular"),
    ("angular", "angular"),
]

MARKER_FILES = [
    ("composer.json", "php"),
    ("requirements.txt", "python"),
    ("Gemfile", "ruby"),
    ("go.mod", "golang"),
]

_NODE_BASE = """FROM node:20-alpine
RUN apk add --no-cache curl
WORKDIR /app
COPY package*.json ./
RUN npm ci || npm install
COPY . .
"""

DOCKERFILE_TEMPLATES: dict[str, str] = {
    "nodejs": _NODE_BASE + """ENV PORT={port}
EXPOSE {port}
CMD ["npm", "start"]
""",
    "nextjs": _NODE_BASE + """RUN npm run build
ENV PORT={port}
EXPOSE {port}
CMD ["npm", "start"]
""",
    "spa": _NODE_BASE + """RUN npm run build && npm install -g serve
ENV PORT={port}
EXPOSE {port}
CMD ["sh", "-c", "serve -s $(ls -d build dist 2>/dev/null | head -n 1) -l $PORT"]
""",
    "static": """FROM node:20-alpine
RUN apk add --no-cache curl && npm install -g serve
WORKDIR /app
COPY . .
ENV PORT={port}
EXPOSE {port}
CMD ["sh", "-c", "serve -s . -l $PORT"]
""",
    "python": """FROM python:3.12-slim
RUN apt-get update && apt-get install -y --no-install-recommends curl && rm -rf /var/lib/apt/lists/*
WORKDIR /app
COPY requirements.txt .
RUN pip install --no-cache-dir -r requirements.txt
COPY . .
ENV PORT={port}
EXPOSE {port}
CMD ["sh", "-c", "if [ -f app.py ]; then python app.py; else python main.py; fi"]
""",
    "golang": """FROM golang:1.22-alpine AS build
WORKDIR /src
COPY . .
RUN go build -o /out/app .

FROM alpine:3.20
RUN apk add --no-cache curl ca-certificates
COPY --from=build /out/app /usr/local/bin/app
ENV PORT={port}
EXPOSE {port}
CMD ["app"]
""",
    "php": """FROM php:8.3-cli
RUN apt-get update && apt-get install -y --no-install-recommends curl && rm -rf /var/lib/apt/lists/*
WORKDIR /app
COPY . .
ENV PORT={port}
EXPOSE {port}
CMD ["sh", "-c", "php -S 0.0.0.0:$PORT -t ."]
""",
    "ruby": """FROM ruby:3.3-slim
RUN apt-get update && apt-get install -y --no-install-recommends curl build-essential && rm -rf /var/lib/apt/lists/*
WORKDIR /app
COPY Gemfile* ./
RUN bundle install
COPY . .
ENV PORT={port}
EXPOSE {port}
CMD ["sh", "-c", "bundle exec rackup -o 0.0.0.0 -p $PORT"]
""",
}

TEMPLATE_ALIASES = {
    "node": "nodejs",
    "express": "nodejs",
    "react": "spa",
    "vue": "spa",
    "angular": "spa",
    "go": "golang",
}


def render_dockerfile(app_type: str, container_port: int) -> str:
    """Render the fallback Dockerfile for an app type."""
    key = TEMPLATE_ALIASES.get(app_type, app_type)
    template = DOCKERFILE_TEMPLATES.get(key)
    if template is None:
        raise BuildError(f"No Dockerfile template for app type '{app_type}'")
    return template.format(port=container_port)


def read_env_file(path: str | None) -> dict[str, str]:
    if not path or not Path(path).exists():
        return {}
    variables: dict[str, str] = {}
    for line in Path(path).read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        variables[key.strip()] = value
    return variables


class DockerImageBuilder(ImageBuilder):
    """Builds runnable images from a source tree."""

    def __init__(
        self,
        runner: ProcessRunner,
        build_timeout: float = 1800.0,
        use_nixpacks: bool = True,
    ) -> None:
        self._runner = runner
        self._build_timeout = build_timeout
        self._use_nixpacks = use_nixpacks

    async def detect_app_type(self, source_dir: str) -> str:
        root = Path(source_dir)
        package_json = root / "package.json"
        if package_json.exists():
            try:
                manifest = json.loads(package_json.read_text())
            except (OSError, ValueError) as e:
                logger.warning("package_json_unreadable", path=str(package_json), error=str(e))
                return "nodejs"
            dependencies = {
                **(manifest.get("dependencies") or {}),
                **(manifest.get("devDependencies") or {}),
            }
            for dependency, app_type in NODE_FRAMEWORKS:
                if dependency in dependencies:
                    return app_type
            return "nodejs"

        for marker, app_type in MARKER_FILES:
            if (root / marker).exists():
                return app_type
        return "static"

    async def build(
        self,
        source_dir: str,
        image_ref: str,
        app_type: str,
        env_file: str | None = None,
        container_port: int = 8080,
    ) -> str:
        log = logger.bind(image=image_ref, app_type=app_type)
        try:
            if (Path(source_dir) / "Dockerfile").exists():
                log.info("image_build_started", strategy="dockerfile")
                await self._docker_build(source_dir, image_ref, "Dockerfile", container_port)
            elif self._use_nixpacks and await self._nixpacks_available():
                log.info("image_build_started", strategy="nixpacks")
                await self._nixpacks_build(source_dir, image_ref, env_file, container_port)
            else:
                log.info("image_build_started", strategy="generated")
                dockerfile = Path(source_dir) / GENERATED_DOCKERFILE
                dockerfile.write_text(render_dockerfile(app_type, container_port))
                await self._docker_build(source_dir, image_ref, GENERATED_DOCKERFILE, container_port)
        except CommandError as e:
            raise BuildError(f"Image build failed for {image_ref}: {e}") from e

        log.info("image_built")
        return image_ref

    async def _docker_build(
        self, source_dir: str, image_ref: str, dockerfile: str, container_port: int
    ) -> None:
        await self._runner.run(
            "docker",
            [
                "build",
                "-t", image_ref,
                "-f", str(Path(source_dir) / dockerfile),
                "--build-arg", f"PORT={container_port}",
                source_dir,
            ],
            timeout=self._build_timeout,
        )

    async def _nixpacks_available(self) -> bool:
        try:
            result = await self._runner.run("nixpacks", ["--version"], check=False, timeout=30)
        except CommandNotFoundError:
            return False
        return result.success

    async def _nixpacks_build(
        self, source_dir: str, image_ref: str, env_file: str | None, container_port: int
    ) -> None:
        args = ["build", source_dir, "--name", image_ref, "--env", f"PORT={container_port}"]
        for key, value in read_env_file(env_file).items():
            args += ["--env", f"{key}={value}"]
        await self._runner.run("nixpacks", args, timeout=self._build_timeout)
