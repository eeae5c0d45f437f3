"""Best-effort detection of runnable apps inside a worktree.

Detection is advisory: callers fall back to the configured default command
when nothing is found, and a malformed manifest just means "no app here".
"""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path

import structlog

from branchpod.models import DetectedApp

logger = structlog.get_logger()

MONOREPO_MARKERS = {
    "melos.yaml": "melos",
    "pnpm-workspace.yaml": "pnpm",
    "turbo.json": "turbo",
}
MONOREPO_APP_DIRS = ("apps", "packages", "modules", "services")

LOCKFILES = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("bun.lockb", "bun"),
)
# Lockfiles of a monorepo usually live at its root
LOCKFILE_SEARCH_DEPTH = 5

# (dependency, framework, default port, host flag)
NODE_FRAMEWORKS: tuple[tuple[str, str, int | None, str], ...] = (
    ("next", "Next.js", 3000, "-H 0.0.0.0"),
    ("nuxt", "Nuxt", 3000, "--host 0.0.0.0"),
    ("vite", "Vite", 5173, "--host 0.0.0.0"),
    ("@vitejs/plugin-react", "Vite", 5173, "--host 0.0.0.0"),
    ("@angular/core", "Angular", 4200, "--host 0.0.0.0"),
    ("@nestjs/core", "NestJS", 3000, ""),
    ("express", "Express", 3000, ""),
    ("webpack-dev-server", "webpack", None, "--host 0.0.0.0"),
    ("react-scripts", "CRA", 3000, ""),
)

PUBSPEC_NAME = re.compile(r"^name:\s*(.+)$", re.MULTILINE)


def detect_package_manager(directory: Path) -> str:
    current = directory
    for _ in range(LOCKFILE_SEARCH_DEPTH):
        for lockfile, manager in LOCKFILES:
            if (current / lockfile).exists():
                return manager
        if current.parent == current:
            break
        current = current.parent
    return "npm"


def detect_node_app(directory: Path, relative: str) -> DetectedApp | None:
    manifest = directory / "package.json"
    if not manifest.is_file():
        return None
    try:
        package = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.debug("Unreadable package.json", path=str(manifest), error=str(e))
        return None
    if not isinstance(package, dict):
        return None

    scripts = package.get("scripts") or {}
    script = next((name for name in ("dev", "start", "serve") if name in scripts), None)
    if script is None:
        return None

    deps = {**(package.get("dependencies") or {}), **(package.get("devDependencies") or {})}
    port: int | None = None
    host_flag = ""
    for dependency, _framework, default_port, flag in NODE_FRAMEWORKS:
        if dependency in deps:
            port, host_flag = default_port, flag
            break

    manager = detect_package_manager(directory)
    command = f"{manager} start" if script == "start" else f"{manager} run {script}"
    if host_flag:
        command = f"{command} -- {host_flag}"

    return DetectedApp(
        name=str(package.get("name") or directory.name),
        type="node",
        command=command,
        cwd=relative,
        port=port,
        package_manager=manager,
    )


def detect_flutter_app(directory: Path, relative: str) -> DetectedApp | None:
    pubspec = directory / "pubspec.yaml"
    if not pubspec.is_file():
        return None
    try:
        content = pubspec.read_text(encoding="utf-8")
    except OSError:
        return None

    if "sdk: flutter" not in content or not (directory / "lib" / "main.dart").is_file():
        return None

    match = PUBSPEC_NAME.search(content)
    return DetectedApp(
        name=match.group(1).strip() if match else directory.name,
        type="flutter",
        # Port comes from the allocated $PORT at spawn time
        command="flutter run -d web-server --web-hostname=0.0.0.0 --web-port=$PORT",
        cwd=relative,
    )


def detect_python_app(directory: Path, relative: str) -> DetectedApp | None:
    if (directory / "manage.py").is_file():
        return DetectedApp(
            name=directory.name,
            type="python",
            command="python manage.py runserver 0.0.0.0:$PORT",
            cwd=relative,
            port=8000,
        )

    for module in ("main", "app"):
        source = directory / f"{module}.py"
        if not source.is_file():
            continue
        try:
            text = source.read_text(encoding="utf-8")
        except OSError:
            continue
        if "FastAPI(" in text or "import uvicorn" in text:
            return DetectedApp(
                name=directory.name,
                type="python",
                command=f"uvicorn {module}:app --host 0.0.0.0 --port $PORT --reload",
                cwd=relative,
                port=8000,
            )
        if "Flask(" in text:
            return DetectedApp(
                name=directory.name,
                type="python",
                command=f"flask --app {module} run --host 0.0.0.0 --port $PORT",
                cwd=relative,
                port=5000,
            )
    return None


def detect_in_directory(directory: Path, relative: str) -> DetectedApp | None:
    """Flutter first, then Node, then Python."""
    return (
        detect_flutter_app(directory, relative)
        or detect_node_app(directory, relative)
        or detect_python_app(directory, relative)
    )


class AppDetector:
    """Scans a worktree root and, for monorepos, its app folders."""

    def monorepo_type(self, worktree_path: str | Path) -> str | None:
        root = Path(worktree_path)
        for marker, kind in MONOREPO_MARKERS.items():
            if (root / marker).exists():
                return kind
        return None

    def scan(self, worktree_path: str | Path) -> list[DetectedApp]:
        root = Path(worktree_path)
        apps: list[DetectedApp] = []

        if self.monorepo_type(root):
            for app_dir in MONOREPO_APP_DIRS:
                parent = root / app_dir
                if not parent.is_dir():
                    continue
                for child in sorted(parent.iterdir()):
                    if child.is_dir():
                        app = detect_in_directory(child, f"{app_dir}/{child.name}")
                        if app:
                            apps.append(app)

        root_app = detect_in_directory(root, ".")
        if root_app:
            apps.append(root_app)

        logger.debug("Detected apps", worktree_path=str(root), count=len(apps))
        return apps

    async def detect(self, worktree_path: str | Path) -> list[DetectedApp]:
        return await asyncio.to_thread(self.scan, worktree_path)
