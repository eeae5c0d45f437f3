"""Tests for app detection in worktrees."""

import json
from pathlib import Path

import pytest

from branchpod.collaborators.detector import (
    AppDetector,
    detect_in_directory,
    detect_node_app,
    detect_package_manager,
)


def write_package(directory: Path, **package) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "package.json").write_text(json.dumps(package))


class TestNodeDetection:
    """Tests for package.json based detection."""

    def test_next_app(self, tmp_path: Path) -> None:
        write_package(tmp_path, name="site", scripts={"dev": "next dev"}, dependencies={"next": "14"})

        app = detect_node_app(tmp_path, ".")

        assert app is not None
        assert app.name == "site"
        assert app.type == "node"
        assert app.command == "npm run dev -- -H 0.0.0.0"
        assert app.port == 3000

    def test_start_script_without_framework(self, tmp_path: Path) -> None:
        write_package(tmp_path, scripts={"start": "node server.js"})

        app = detect_node_app(tmp_path, ".")

        assert app is not None
        assert app.command == "npm start"
        assert app.port is None
        assert app.name == tmp_path.name

    def test_package_without_scripts_is_skipped(self, tmp_path: Path) -> None:
        write_package(tmp_path, name="lib", scripts={"build": "tsc"})
        assert detect_node_app(tmp_path, ".") is None

    def test_invalid_manifest_is_skipped(self, tmp_path: Path) -> None:
        (tmp_path / "package.json").write_text("{not json")
        assert detect_node_app(tmp_path, ".") is None

    @pytest.mark.parametrize(
        ("lockfile", "manager"),
        [("pnpm-lock.yaml", "pnpm"), ("yarn.lock", "yarn"), ("bun.lockb", "bun")],
    )
    def test_package_manager_from_lockfile(self, tmp_path: Path, lockfile: str, manager: str) -> None:
        (tmp_path / lockfile).write_text("")
        nested = tmp_path / "apps" / "web"
        nested.mkdir(parents=True)

        assert detect_package_manager(nested) == manager


class TestOtherStacks:
    """Tests for Flutter and Python detection."""

    def test_flutter_app(self, tmp_path: Path) -> None:
        (tmp_path / "pubspec.yaml").write_text(
            "name: mobile_app\ndependencies:\n  flutter:\n    sdk: flutter\n"
        )
        (tmp_path / "lib").mkdir()
        (tmp_path / "lib" / "main.dart").write_text("void main() {}")

        app = detect_in_directory(tmp_path, ".")

        assert app is not None
        assert app.type == "flutter"
        assert app.name == "mobile_app"
        assert "--web-port=$PORT" in app.command

    def test_django_app(self, tmp_path: Path) -> None:
        (tmp_path / "manage.py").write_text("")

        app = detect_in_directory(tmp_path, ".")

        assert app is not None
        assert app.command == "python manage.py runserver 0.0.0.0:$PORT"
        assert app.port == 8000

    def test_fastapi_app(self, tmp_path: Path) -> None:
        (tmp_path / "main.py").write_text("from fastapi import FastAPI\napp = FastAPI()\n")

        app = detect_in_directory(tmp_path, ".")

        assert app is not None
        assert app.command.startswith("uvicorn main:app")

    def test_flask_app(self, tmp_path: Path) -> None:
        (tmp_path / "app.py").write_text("from flask import Flask\napp = Flask(__name__)\n")

        app = detect_in_directory(tmp_path, ".")

        assert app is not None
        assert app.port == 5000

    def test_empty_directory(self, tmp_path: Path) -> None:
        assert detect_in_directory(tmp_path, ".") is None


class TestAppDetector:
    """Tests for whole-worktree scans."""

    def test_monorepo_apps_come_first(self, tmp_path: Path) -> None:
        (tmp_path / "pnpm-workspace.yaml").write_text("packages:\n  - apps/*\n")
        write_package(tmp_path, name="root", scripts={"dev": "turbo dev"})
        write_package(tmp_path / "apps" / "web", name="web", scripts={"dev": "vite"}, devDependencies={"vite": "5"})
        write_package(tmp_path / "apps" / "docs", name="docs", scripts={"build": "x"})

        detector = AppDetector()
        apps = detector.scan(tmp_path)

        assert detector.monorepo_type(tmp_path) == "pnpm"
        assert [(a.name, a.cwd) for a in apps] == [("web", "apps/web"), ("root", ".")]
        assert apps[0].command == "pnpm run dev -- --host 0.0.0.0"
        assert apps[0].package_manager == "pnpm"

    def test_plain_repo_ignores_app_dirs(self, tmp_path: Path) -> None:
        write_package(tmp_path / "apps" / "web", name="web", scripts={"dev": "vite"})

        detector = AppDetector()

        assert detector.monorepo_type(tmp_path) is None
        assert detector.scan(tmp_path) == []

    @pytest.mark.asyncio
    async def test_detect_runs_scan(self, tmp_path: Path) -> None:
        (tmp_path / "manage.py").write_text("")

        apps = await AppDetector().detect(str(tmp_path))

        assert [a.type for a in apps] == ["python"]
