"""Shared fixtures for dotctl tests."""

from __future__ import annotations

import argparse
import importlib.util
import json
import sys
from pathlib import Path
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Load the script as a module (not in a package).
# Register in sys.modules so all test files share the SAME instance.
# ---------------------------------------------------------------------------

_SCRIPT = Path(__file__).parent.parent / "scripts" / "dotctl.py"

if "dotctl" not in sys.modules:
    _spec = importlib.util.spec_from_file_location("dotctl", _SCRIPT)
    _mod = importlib.util.module_from_spec(_spec)
    sys.modules["dotctl"] = _mod
    _spec.loader.exec_module(_mod)

mod = sys.modules["dotctl"]

_REAL_HOME = Path.home()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_home(tmp_path, monkeypatch):
    """Redirect all module-level paths into a temp directory."""
    home = tmp_path / "home"
    home.mkdir()
    dotfiles = home / ".dotfiles"
    store = tmp_path / "nix" / "store"
    store.mkdir(parents=True)

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setattr(mod, "DOTFILES_DIR", dotfiles)
    monkeypatch.setattr(mod, "FLAKE_DIR", home / ".config" / "nix-darwin")
    monkeypatch.setattr(mod, "STORE_DIR", store)
    monkeypatch.setattr(mod, "MANIFEST_PATH", dotfiles / "dotctl.json")
    monkeypatch.setattr(mod, "GENERATED_DIR", dotfiles / ".config" / "nix" / "generated")
    monkeypatch.setattr(mod, "BACKUPS_DIR", home / "dotfiles_backups")
    monkeypatch.setattr(mod, "DOCUMENTS_DIR", home / "Documents")
    monkeypatch.setattr(mod, "SKILLS_TARGET", home / ".claude" / "skills")
    monkeypatch.setattr(mod, "_current_backup", None)
    monkeypatch.setattr(mod, "_pending_command", None)

    for key, info in mod.PLUGIN_DIRS.items():
        patched = dict(info)
        patched["dir"] = home / info["dir"].relative_to(_REAL_HOME)
        monkeypatch.setitem(mod.PLUGIN_DIRS, key, patched)

    monkeypatch.setattr(Path, "home", staticmethod(lambda: home))

    return home


@pytest.fixture
def no_subprocess(monkeypatch):
    """Record run_command calls instead of spawning tools. Returns the call list."""
    calls: list[tuple[list[str], Any]] = []

    def fake_run(argv, cwd=None):
        calls.append((list(argv), cwd))
        return 0

    monkeypatch.setattr(mod, "run_command", fake_run)
    return calls


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def seed_manifest(
    home: Path,
    packages: dict[str, list[str]] | None = None,
    targets: dict[str, list[str]] | None = None,
    modules: list[dict[str, Any]] | None = None,
    plugins: dict[str, list[str]] | None = None,
    activation: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Create dotctl.json under the fake dotfiles checkout. Returns manifest dict."""
    dotfiles = home / ".dotfiles"
    dotfiles.mkdir(parents=True, exist_ok=True)

    manifest: dict[str, Any] = {
        "version": "1.0",
        "updated": "2026-01-01",
        "username": "tester",
        "inputs": {"nixpkgs": "github:NixOS/nixpkgs/nixpkgs-unstable"},
        "packages": packages if packages is not None else {
            "common": ["git", "jq", "ripgrep"],
            "darwin": ["mkalias", "jq"],
            "home": [],
        },
        "targets": targets if targets is not None else {
            "system": ["common", "darwin"],
            "home": ["common", "home"],
        },
        "plugins": plugins if plugins is not None else {"yazi": [], "nushell": []},
        "modules": modules if modules is not None else [],
        "activation": activation if activation is not None else {
            "documents": ["bioinformatics", "hacking", "screenshots"],
            "dotfiles_repo": "https://example.invalid/dotfiles.git",
            "deploy": False,
            "skills_source": "",
        },
    }
    (dotfiles / "dotctl.json").write_text(json.dumps(manifest, indent=2) + "\n")
    return manifest


def make_store_path(store: Path, name: str, files: list[str] | None = None) -> Path:
    """Create a fake store path directory, optionally with files inside."""
    path = store / name
    path.mkdir(parents=True, exist_ok=True)
    for rel in files or []:
        f = path / rel
        f.parent.mkdir(parents=True, exist_ok=True)
        f.write_text("#!/bin/sh\n")
    return path


def make_args(**overrides: Any) -> argparse.Namespace:
    """Create an argparse.Namespace with sensible test defaults."""
    defaults: dict[str, Any] = {
        "dry_run": False,
        "diff": False,
        "verbose": False,
        "yes": True,
        "fix": False,
        "json": False,
        "recipe": None,
        "params": [],
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)
