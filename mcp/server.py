#!/usr/bin/env python3
"""MCP server exposing dotctl recipes and manifest operations as structured tools."""

from __future__ import annotations

import argparse
import io
import sys
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable

SCRIPT_DIR = Path(__file__).resolve().parent.parent / "scripts"
sys.path.insert(0, str(SCRIPT_DIR))

import dotctl  # noqa: E402
from mcp.server.fastmcp import FastMCP  # noqa: E402

mcp = FastMCP(
    "dotctl",
    instructions="Inspect and operate a nix-darwin + dotter dotfiles setup: package lists, "
                 "evaluated configuration, activation, validation and justfile-style recipes.",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mock_args(**kwargs: Any) -> argparse.Namespace:
    defaults = {
        "dry_run": False,
        "diff": False,
        "verbose": False,
        "yes": True,
        "fix": False,
        "json": False,
    }
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


@contextmanager
def _capture_output():
    old_out, old_err = sys.stdout, sys.stderr
    sys.stdout = buf_out = io.StringIO()
    sys.stderr = buf_err = io.StringIO()
    try:
        yield buf_out, buf_err
    finally:
        sys.stdout, sys.stderr = old_out, old_err


def _run_cmd(fn: Callable[[], int]) -> dict[str, Any]:
    with _capture_output() as (out, err):
        try:
            code = fn()
        except SystemExit as e:
            return {
                "success": False,
                "error": err.getvalue().strip() or out.getvalue().strip() or f"exit code {e.code}",
            }
    return {
        "success": code == 0,
        "exit_code": code,
        "output": out.getvalue().strip(),
        "stderr": err.getvalue().strip(),
    }


def _manifest() -> dict[str, Any]:
    with _capture_output():
        return dotctl.read_manifest()


def _needs_terminal(name: str) -> bool:
    """Recipes that open an editor or replace the process cannot run over stdio."""
    recipe = dotctl.resolve_recipe(name)
    if recipe is None:
        return False
    if recipe.handler is dotctl.cmd_reload or any(c and c[0] == "hx" for c in recipe.commands):
        return True
    return any(_needs_terminal(dep) for dep in recipe.deps + recipe.then)


# ---------------------------------------------------------------------------
# Read-only tools
# ---------------------------------------------------------------------------


@mcp.tool()
def dotfiles_status() -> dict[str, Any]:
    """Return the manifest summary as structured JSON."""
    try:
        manifest = _manifest()
    except SystemExit:
        return {"success": False, "error": f"{dotctl.MANIFEST_PATH} not found. Run 'init' first."}
    try:
        counts = {t: len(dotctl.compose_packages(manifest, t)) for t in manifest.get("targets", {})}
    except dotctl.ManifestError as e:
        return {"success": False, "error": str(e)}
    return {
        "dotfiles_dir": str(dotctl.DOTFILES_DIR),
        "flake_dir": str(dotctl.FLAKE_DIR),
        "packages": counts,
        "plugins": {k: [p for p in v if not dotctl.is_disabled(p)]
                    for k, v in manifest.get("plugins", {}).items()},
        "modules": [m.get("name", "?") for m in manifest.get("modules", [])],
        "activation": manifest.get("activation", {}),
        "last_updated": manifest.get("updated") or "never",
    }


@mcp.tool()
def dotfiles_compose(target: str | None = None) -> dict[str, Any]:
    """Return the composed, deduplicated package list for one or all targets.

    Args:
        target: Target name (e.g. "system", "home"). All targets when omitted.
    """
    try:
        manifest = _manifest()
        targets = [target] if target else list(manifest.get("targets", {}))
        return {t: [str(r) for r in dotctl.compose_packages(manifest, t)] for t in targets}
    except SystemExit:
        return {"success": False, "error": f"{dotctl.MANIFEST_PATH} not found. Run 'init' first."}
    except dotctl.ManifestError as e:
        return {"success": False, "error": str(e)}


@mcp.tool()
def dotfiles_eval(key: str | None = None) -> dict[str, Any]:
    """Return the evaluated configuration tree, or the value at a dotted key.

    Args:
        key: Dotted path into the tree (e.g. "homebrew.casks"). Whole tree when omitted.
    """
    try:
        tree = dotctl.evaluate_modules(_manifest())
        return {"key": key or "", "value": dotctl.lookup(tree, key) if key else tree}
    except SystemExit:
        return {"success": False, "error": f"{dotctl.MANIFEST_PATH} not found. Run 'init' first."}
    except dotctl.ManifestError as e:
        return {"success": False, "error": str(e)}


@mcp.tool()
def dotfiles_list_recipes() -> dict[str, Any]:
    """List every recipe with its group, parameters, dependencies and aliases."""
    aliases: dict[str, list[str]] = {}
    for alias, name in dotctl.ALIASES.items():
        aliases.setdefault(name, []).append(alias)
    return {
        "recipes": [
            {
                "name": r.name,
                "group": r.group,
                "doc": r.doc,
                "params": r.params,
                "deps": r.deps,
                "aliases": aliases.get(r.name, []),
            }
            for r in dotctl.RECIPES.values()
        ],
    }


@mcp.tool()
def dotfiles_validate() -> dict[str, Any]:
    """Run the repository validation rules and return each rule's issues."""
    args = _mock_args()
    with _capture_output():
        results = dotctl.run_validation(dotctl.DOTFILES_DIR, args)
    errors = sum(1 for r in results for i in r.issues if i.severity == "error")
    return {
        "success": errors == 0,
        "rules": [asdict(r) for r in results],
    }


# ---------------------------------------------------------------------------
# Mutating tools
# ---------------------------------------------------------------------------


@mcp.tool()
def dotfiles_activate(steps: list[str] | None = None, dry_run: bool = True) -> dict[str, Any]:
    """Run activation steps and report every filesystem change.

    Args:
        steps: Step names to run (documents, dotfiles-repo, deploy, yazi-plugins,
            nushell-plugins, skills). All steps when omitted.
        dry_run: Report what would change without touching the filesystem.
    """
    args = _mock_args(dry_run=dry_run)
    with _capture_output() as (out, _):
        try:
            ctx = dotctl.run_activation(dotctl.load_manifest_or_default(), args, only=steps)
        except dotctl.ActivationError as e:
            return {"success": False, "error": str(e), "output": out.getvalue().strip()}
    return {
        "success": True,
        "dry_run": dry_run,
        "changes": [asdict(c) for c in ctx.changes],
        "commands": ctx.commands,
    }


@mcp.tool()
def dotfiles_generate(dry_run: bool = False) -> dict[str, Any]:
    """Render the composed package lists and Brewfile into the generated directory.

    Args:
        dry_run: Preview without writing files.
    """
    args = _mock_args(dry_run=dry_run)
    return _run_cmd(lambda: dotctl.cmd_generate(args, {}))


@mcp.tool()
def dotfiles_set_config(key: str, value: str) -> dict[str, Any]:
    """Update a manifest configuration value.

    Args:
        key: Dotted key (username, activation.dotfiles_repo, activation.deploy,
            activation.documents, activation.owner, activation.skills_source).
        value: New value (array fields are comma-separated, booleans true/false).
    """
    args = _mock_args()
    return _run_cmd(lambda: dotctl.cmd_set(args, {"key": key, "value": value}))


@mcp.tool()
def dotfiles_run_recipe(name: str, params: list[str] | None = None,
                        dry_run: bool = False) -> dict[str, Any]:
    """Run a recipe (or alias) with its dependencies and return its exit code and output.

    Args:
        name: Recipe name or alias (e.g. "rebuild", "fmt", "validate").
        params: Positional recipe arguments.
        dry_run: Print the commands that would run instead of running them.
    """
    if not dry_run and _needs_terminal(name):
        return {"success": False, "error": f"recipe '{name}' needs an interactive terminal"}
    args = _mock_args(dry_run=dry_run)
    return _run_cmd(lambda: dotctl.run_recipe(name, params or [], args))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    mcp.run(transport="stdio")
