#!/usr/bin/env python3
"""Manage a Nix + dotter development environment: recipes, package lists and activation."""

from __future__ import annotations

import argparse
import copy
import difflib
import fnmatch
import getpass
import json
import os
import platform
import re
import shlex
import shutil
import subprocess
import sys
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

# ---------------------------------------------------------------------------
# Terminal colors (respects NO_COLOR and non-TTY)
# ---------------------------------------------------------------------------

_USE_COLOR = (
    sys.stdout.isatty()
    and os.environ.get("NO_COLOR") is None
    and os.environ.get("TERM") != "dumb"
)


def _ansi(code: str) -> str:
    return f"\033[{code}m" if _USE_COLOR else ""


class C:
    """ANSI escape sequences, empty strings when color is disabled."""
    RESET = _ansi("0")
    BOLD = _ansi("1")
    DIM = _ansi("2")
    RED = _ansi("31")
    GREEN = _ansi("32")
    YELLOW = _ansi("33")
    BLUE = _ansi("34")
    MAGENTA = _ansi("35")
    CYAN = _ansi("36")
    BOLD_RED = _ansi("1;31")
    BOLD_GREEN = _ansi("1;32")
    BOLD_YELLOW = _ansi("1;33")
    BOLD_CYAN = _ansi("1;36")


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------


def _env_path(name: str, default: Path) -> Path:
    value = os.environ.get(name)
    return Path(value).expanduser() if value else default


_XDG_CONFIG_HOME = _env_path("XDG_CONFIG_HOME", Path.home() / ".config")

FLAKE_DIR = _env_path("FLAKE_DIR", _XDG_CONFIG_HOME / "nix-darwin")
DOTFILES_DIR = _env_path("DOTFILES_DIR", Path.home() / ".dotfiles")
STORE_DIR = _env_path("NIX_STORE_DIR", Path("/nix/store"))
MANIFEST_PATH = DOTFILES_DIR / "dotctl.json"
GENERATED_DIR = DOTFILES_DIR / ".config" / "nix" / "generated"
BACKUPS_DIR = Path.home() / "dotfiles_backups"
DOCUMENTS_DIR = Path.home() / "Documents"

PLUGIN_DIRS: dict[str, dict[str, Any]] = {
    "yazi": {
        "label": "Yazi",
        "dir": Path.home() / ".config" / "yazi" / "plugins",
        "pattern": "*.yazi",
    },
    "nushell": {
        "label": "Nushell",
        "dir": Path.home() / ".local" / "share" / "nushell-plugins",
        "pattern": "nu_plugin_*",
    },
}

SKILLS_TARGET = Path.home() / ".claude" / "skills"

GENERATED_HEADER = "# Generated by dotctl -- do not edit directly"
GENERATED_HEADER_TEMPLATE = (
    "{header}\n"
    "# Run: dotctl generate\n"
    "# Last generated: {timestamp}\n"
)

DEFAULT_SOURCE = "nixpkgs"
OWNER_GROUP = "staff"

BACKUP_TARGETS = [
    ".zshrc",
    ".zprofile",
    ".zshenv",
    ".gitconfig",
    ".config/helix",
    ".config/ghostty",
    ".config/zellij",
    ".config/yazi",
]

HEALTH_TOOLS = [
    ("dotter", "dotter"),
    ("nix", "nix"),
    ("darwin-rebuild", "darwin-rebuild"),
    ("hx", "helix"),
    ("zellij", "zellij"),
    ("yazi", "yazi"),
]

SETTABLE_KEYS: dict[str, tuple[str, str, str]] = {
    "username": ("", "username", "scalar"),
    "activation.dotfiles_repo": ("activation", "dotfiles_repo", "scalar"),
    "activation.deploy": ("activation", "deploy", "bool"),
    "activation.documents": ("activation", "documents", "array"),
    "activation.owner": ("activation", "owner", "scalar"),
    "activation.skills_source": ("activation", "skills_source", "scalar"),
    "activation.skills_target": ("activation", "skills_target", "scalar"),
}

# Where each composed target lands in the evaluated configuration tree.
TARGET_TREE_KEYS: dict[str, tuple[str, str]] = {
    "system": ("environment", "systemPackages"),
    "home": ("home", "packages"),
}

# ---------------------------------------------------------------------------
# Default manifest
# ---------------------------------------------------------------------------

COMMON_PACKAGES = [
    # Build tools & system libraries
    "cmake", "clang", "libiconv", "pkgconf", "zlib", "llvm", "gettext",
    # Nix tooling
    "nixd", "nixfmt", "nil",
    # Editors
    "neovim", "helix", "# ghostty",
    # Core CLI tools
    "less", "tree", "parallel", "curl", "wget", "unixtools.watch", "jq",
    "ripgrep", "ripgrep-all", "fd", "skim", "fzf", "fzf-make", "bat", "eza",
    "tokei", "hyperfine", "ouch", "xz", "zstd", "bzip2", "p7zip", "xclip",
    "tailspin",
    # Shell & prompt
    "zoxide", "fastfetch", "starship", "atuin", "carapace",
    # Nushell ecosystem
    "nushell", "nushellPlugins.polars", "# nushellPlugins.units",
    "nushellPlugins.query", "nushellPlugins.highlight",
    "nushellPlugins.gstat", "nushellPlugins.formats", "topiary", "nufmt",
    # Disk usage & monitoring
    "dust", "dua", "btop", "htop", "# bottom",
    # Terminal multiplexer
    "zellij", "tmux",
    # File management (yazi plugins are linked by activation, not installed)
    "yazi",
    # Git & version control
    "git", "gh", "jujutsu", "lazygit", "difftastic", "prek", "wrkflw",
    "jj-starship:jj-starship", "mergiraf", "gitlogue",
    # Development tools
    "just", "mask", "direnv", "mise", "devbox", "watchexec", "dotter",
    "lychee", "gnuplot", "wiki-tui", "tlrc", "binsider",
    # Bash/Zsh
    "nixpkgs-stable:bash-language-server", "shellcheck", "shfmt",
    "zsh-autosuggestions", "zsh-syntax-highlighting",
    # Awk
    "gawk", "awk-language-server",
    # Rust ecosystem
    "rustup", "mdbook", "rust-script", "evcxr", "maturin", "bacon",
    "rusty-man", "cargo-nextest", "cargo-msrv", "cargo-sort", "cargo-audit",
    "cargo-info", "cargo-fuzz", "cargo-insta", "cargo-dist", "cargo-shear",
    "cargo-wizard", "cargo-show-asm", "cargo-generate", "cargo-readme",
    "reindeer", "crate2nix", "dioxus-cli",
    # SQL & data
    "duckdb", "tabiew", "harlequin", "# visidata",
    # Python ecosystem
    "python313", "# uv", "ruff", "basedpyright", "marimo",
    "python313Packages.ipython", "python313Packages.notebook",
    "python313Packages.jupyter-core", "python313Packages.jupyterlab",
    "python313Packages.ipykernel", "python313Packages.polars",
    "python313Packages.biopython", "python313Packages.pysam",
    # R ecosystem
    "R", "radian", "air-formatter",
    # TOML
    "taplo",
    # Go ecosystem
    "go", "gopls", "gotools", "goreleaser",
    # Docker
    "docker-ls",
    # YAML
    "yaml-language-server",
    # Lua (lua, luau and luajit all provide /bin/lua)
    "luajit", "lua-language-server", "stylua",
    # Java & JVM
    "openjdk", "jdk", "jdt-language-server", "nextflow",
    # Web development
    "superhtml", "fnm",
    # OCaml
    "ocaml",
    # BEAM
    "erlang", "rebar3", "gleam", "beam28Packages.elixir",
    "beam28Packages.elixir-ls",
    # Authoring & documentation
    "markdown-oxide", "rumdl", "typst", "typstyle", "tinymist", "pandoc",
    "presenterm",
    # Media processing
    "poppler", "ffmpeg", "imagemagick", "graphviz",
    # Bioinformatics
    "seqkit", "minimap2", "bedtools", "samtools", "bcftools",
    # Music
    "ncspot",
]


def default_manifest(username: Optional[str] = None) -> dict[str, Any]:
    """Return the manifest written by 'init'."""
    user = username or getpass.getuser()
    user_home = str(Path.home())
    return {
        "version": "1.0",
        "updated": "",
        "username": user,
        "inputs": {
            "nixpkgs": "github:NixOS/nixpkgs/nixpkgs-unstable",
            "nixpkgs-stable": "github:NixOS/nixpkgs/nixos-25.05",
            "jj-starship": "github:dmmulroy/jj-starship",
            "anthropic-skills": "github:anthropics/skills",
        },
        "packages": {
            "common": list(COMMON_PACKAGES),
            "darwin": ["mkalias", "skhd"],
            "home": [],
        },
        "targets": {
            "system": ["common", "darwin"],
            "home": ["common", "home"],
        },
        "plugins": {
            "yazi": [
                f"yaziPlugins.{name}" for name in (
                    "sudo", "starship", "rsync", "ouch", "smart-filter",
                    "smart-enter", "mount", "mediainfo", "chmod", "git",
                    "lazygit", "duckdb",
                )
            ],
            "nushell": [
                f"nushellPlugins.{name}"
                for name in ("polars", "query", "highlight", "gstat", "formats")
            ],
        },
        "modules": [
            {
                "name": "core",
                "settings": {
                    "system": {"primaryUser": user, "stateVersion": 5},
                    "nixpkgs": {
                        "hostPlatform": "aarch64-darwin",
                        "config": {"allowUnfree": True},
                    },
                    "nix": {
                        "settings": {"experimental-features": "nix-command flakes"},
                        "gc": {
                            "automatic": True,
                            "interval": {"Day": 7},
                            "options": "--delete-older-than 30d",
                        },
                    },
                    "fonts": {"packages": ["nerd-fonts.jetbrains-mono"]},
                    "home": {"username": user, "stateVersion": "24.05"},
                },
            },
            {
                "name": "homebrew",
                "settings": {
                    "nix-homebrew": {
                        "enable": True,
                        "enableRosetta": False,
                        "user": user,
                        "autoMigrate": True,
                        "taps": {"steipete/tap": "homebrew-steipete"},
                    },
                    "homebrew": {
                        "enable": True,
                        "brews": [
                            "mas", "gcc", "lld", "llvm", "libiconv", "# zlib",
                            "# pkgconf", "sevenzip", "opam",
                        ],
                        "casks": [
                            "ghostty", "arc", "raycast", "figma", "slack",
                            "discord", "signal", "visual-studio-code",
                            "rstudio", "docker-desktop", "zoom",
                            "font-symbols-only-nerd-font",
                            "steipete/tap/repobar",
                        ],
                        "masApps": {
                            "Bear": 1091189122,
                            "Instapaper": 288545208,
                            "Spark": 1176895641,
                            "HazeOver": 430798174,
                            "Amphetamine": 937984704,
                            "Bartender": 441258766,
                            "Smart Countdown Timer": 1410709951,
                            "Xcode": 497799835,
                        },
                        "onActivation": {
                            "cleanup": "zap",
                            "autoUpdate": True,
                            "upgrade": True,
                        },
                    },
                },
            },
            {
                "name": "system-defaults",
                "settings": {
                    "system": {
                        "defaults": {
                            "dock": {
                                "autohide": False,
                                "mineffect": "scale",
                                "orientation": "right",
                                "tilesize": 28,
                                "show-recents": False,
                                "show-process-indicators": True,
                                "persistent-apps": [
                                    "/Applications/Arc.app",
                                    "/Applications/Bear.app",
                                    "/Applications/Ghostty.app",
                                ],
                            },
                            "finder": {
                                "AppleShowAllExtensions": False,
                                "AppleShowAllFiles": True,
                                "ShowPathbar": True,
                                "FXPreferredViewStyle": "Nlsv",
                                "FXEnableExtensionChangeWarning": False,
                                "FXDefaultSearchScope": "SCcf",
                                "CreateDesktop": False,
                                "_FXSortFoldersFirst": True,
                            },
                            "loginwindow": {"autoLoginUser": user},
                            "menuExtraClock": {"ShowSeconds": True},
                            "screencapture": {
                                "location": f"{user_home}/Documents/screenshots",
                            },
                            "CustomUserPreferences": {
                                "com.apple.desktopservices": {
                                    "DSDontWriteNetworkStores": True,
                                    "DSDontWriteUSBStores": True,
                                },
                                "com.apple.SoftwareUpdate": {
                                    "AutomaticCheckEnabled": True,
                                    "ScheduleFrequency": 1,
                                    "AutomaticDownload": 1,
                                    "CriticalUpdateInstall": 1,
                                },
                            },
                        },
                    },
                },
            },
            {
                "name": "shell",
                "settings": {
                    "programs": {
                        "zsh": {
                            "enable": True,
                            "enableCompletion": True,
                            "promptInit": "",
                        },
                        "direnv": {"enable": True, "nix-direnv": {"enable": True}},
                    },
                },
            },
            {
                "name": "environment",
                "settings": {
                    "environment": {
                        "variables": {
                            "NIX_LDFLAGS": "-L${pkgs.bzip2}/lib -L${pkgs.xz}/lib "
                                           "-L${pkgs.zstd}/lib -L${pkgs.libiconv}/lib",
                            "NIX_CFLAGS_COMPILE": "-I${pkgs.xz.dev}/include "
                                                  "-I${pkgs.zstd.dev}/include "
                                                  "-I${pkgs.libiconv.dev}/include",
                        },
                    },
                },
            },
        ],
        "activation": {
            "documents": ["bioinformatics", "hacking", "screenshots"],
            "dotfiles_repo": "https://github.com/nrminor/.dotfiles.git",
            "deploy": True,
            "owner": user,
            "skills_source": "",
            "skills_target": "~/.claude/skills",
        },
    }


# ---------------------------------------------------------------------------
# Backup system
# ---------------------------------------------------------------------------

_current_backup: Optional[Path] = None
_pending_command: Optional[str] = None


def init_backup(command: str) -> Path:
    """Create a timestamped backup directory for this session."""
    global _current_backup
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    backup_dir = BACKUPS_DIR / ts
    n = 0
    while backup_dir.exists():
        n += 1
        backup_dir = BACKUPS_DIR / f"{ts}-{n}"
    backup_dir.mkdir(parents=True)
    _current_backup = backup_dir
    meta = {"created": ts, "command": command, "host": platform.node()}
    (backup_dir / "meta.json").write_text(json.dumps(meta, indent=2) + "\n")
    return backup_dir


def begin_backup(command: str) -> None:
    """Start a new backup session for one command invocation.

    The directory is created when the first file is backed up."""
    global _current_backup, _pending_command
    _current_backup = None
    _pending_command = command


def _backups_enabled() -> bool:
    return _current_backup is not None or _pending_command is not None


def _backup_dest(original: Path) -> Optional[Path]:
    """Map an absolute path to its location inside the current backup."""
    if _current_backup is None:
        if _pending_command is None:
            return None
        init_backup(_pending_command)
    try:
        rel = original.relative_to(Path.home())
    except ValueError:
        rel = Path(str(original).lstrip("/"))
    return _current_backup / "files" / rel


def backup_file(path: Path, args: argparse.Namespace) -> bool:
    """Copy a file (following symlinks) into the current backup. Returns True if copied."""
    if not path.exists() or path.is_dir() or not _backups_enabled():
        return False
    if args.dry_run:
        log_verbose(f"{C.MAGENTA}[dry-run]{C.RESET} Would backup {path}", args)
        return False
    dest = _backup_dest(path)
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(path, dest)
    log_verbose(f"{C.BLUE}Backed up{C.RESET} {path}", args)
    return True


def backup_directory(path: Path, args: argparse.Namespace) -> bool:
    """Copy a directory tree into the current backup. Returns True if copied."""
    if not path.is_dir() or not _backups_enabled():
        return False
    if args.dry_run:
        log_verbose(f"{C.MAGENTA}[dry-run]{C.RESET} Would backup dir {path}", args)
        return False
    dest = _backup_dest(path)
    if dest.exists():
        shutil.rmtree(dest)
    shutil.copytree(path, dest, symlinks=False, ignore_dangling_symlinks=True)
    log_verbose(f"{C.BLUE}Backed up dir{C.RESET} {path}", args)
    return True


def list_backups() -> list[Path]:
    """Return backup directories, newest first."""
    if not BACKUPS_DIR.exists():
        return []
    return sorted(
        (d for d in BACKUPS_DIR.iterdir() if d.is_dir() and (d / "meta.json").exists()),
        reverse=True,
    )


def backup_command(backup_dir: Path) -> str:
    try:
        return json.loads((backup_dir / "meta.json").read_text()).get("command", "?")
    except (OSError, json.JSONDecodeError):
        return "?"


def latest_backup(command: Optional[str] = None) -> Optional[Path]:
    """Return the most recent backup directory, or None.

    With a command, only backups made by that command are considered."""
    for backup in list_backups():
        if command is None or backup_command(backup) == command:
            return backup
    return None


def restore_from_backup(backup_dir: Path, targets: Optional[list[Path]],
                        args: argparse.Namespace) -> int:
    """Restore backed-up files to their original locations. Returns count.

    With targets=None every file in the backup is restored."""
    files_root = backup_dir / "files"
    if not files_root.exists():
        return 0
    target_set = {str(t) for t in targets} if targets is not None else None
    count = 0
    for backed_up in sorted(files_root.rglob("*")):
        if not backed_up.is_file():
            continue
        rel = backed_up.relative_to(files_root)
        original = Path.home() / rel
        if target_set is not None and str(original) not in target_set:
            continue
        if args.dry_run:
            log_verbose(f"{C.MAGENTA}[dry-run]{C.RESET} Would restore {original}", args)
            count += 1
            continue
        if original.is_symlink():
            original.unlink()
        original.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(backed_up, original)
        log_verbose(f"{C.GREEN}Restored{C.RESET} {original}", args)
        count += 1
    return count


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


class ManifestError(Exception):
    """The manifest names something it does not define."""


class ActivationError(Exception):
    """An activation step failed; the remaining steps were not run."""


_NIX_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_'-]*$")


@dataclass(frozen=True)
class PackageRef:
    source: str
    attr_path: tuple[str, ...]

    @classmethod
    def parse(cls, text: str) -> PackageRef:
        head, sep, tail = text.strip().partition(":")
        source, attr = (head, tail) if sep else (DEFAULT_SOURCE, head)
        parts = tuple(attr.split("."))
        if not source or not all(parts):
            raise ManifestError(f"invalid package reference '{text}'")
        return cls(source, parts)

    @property
    def attr(self) -> str:
        return ".".join(self.attr_path)

    def __str__(self) -> str:
        if self.source == DEFAULT_SOURCE:
            return self.attr
        return f"{self.source}:{self.attr}"

    def to_nix(self) -> str:
        attr = ".".join(p if _NIX_IDENT.match(p) else f'"{p}"' for p in self.attr_path)
        if self.source == DEFAULT_SOURCE:
            return f"pkgs.{attr}"
        system = "${pkgs.stdenv.hostPlatform.system}"
        kind = "legacyPackages" if self.source.startswith("nixpkgs") else "packages"
        return f"inputs.{self.source}.{kind}.{system}.{attr}"


@dataclass
class Change:
    step: str
    action: str
    path: str
    detail: str = ""


@dataclass
class ActivationContext:
    manifest: dict[str, Any]
    args: argparse.Namespace
    step: str = ""
    changes: list[Change] = field(default_factory=list)
    commands: list[list[str]] = field(default_factory=list)

    def record(self, action: str, path: Path, detail: str = "") -> None:
        self.changes.append(Change(self.step, action, str(path), detail))
        suffix = f" -> {detail}" if detail else ""
        if self.args.dry_run:
            log(f"{C.MAGENTA}[dry-run]{C.RESET} Would {action} {path}{suffix}")
        else:
            log_verbose(f"{C.GREEN}{action}{C.RESET} {path}{suffix}", self.args)


@dataclass
class Recipe:
    name: str
    group: str
    doc: str
    commands: list[list[str]] = field(default_factory=list)
    params: list[str] = field(default_factory=list)
    deps: list[str] = field(default_factory=list)
    then: list[str] = field(default_factory=list)
    cwd: Optional[str] = None
    files: tuple[str, ...] = ()
    ignore_errors: bool = False
    before: str = ""
    after: str = ""
    handler: Optional[Callable[[argparse.Namespace, dict[str, Any]], int]] = None


@dataclass
class Issue:
    severity: str
    message: str
    file: Optional[str] = None
    fix_suggestion: Optional[str] = None


@dataclass
class RuleResult:
    rule_name: str
    passed: bool
    issues: list[Issue] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------


def section_header(title: str) -> None:
    width = 50
    rule = "─" * max(1, width - len(title) - 5)
    print(f"\n{C.BOLD_CYAN}─── {title} {rule}{C.RESET}")


def summary_line(label: str, count: int, detail: str = "") -> None:
    extra = f"  {C.DIM}({detail}){C.RESET}" if detail else ""
    print(f"  {label:15s} {C.BOLD}{count}{C.RESET}{extra}")


def log(msg: str) -> None:
    print(f"  {msg}")


def log_verbose(msg: str, args: argparse.Namespace) -> None:
    if args.verbose:
        print(f"  {C.DIM}[verbose] {msg}{C.RESET}")


def error(msg: str) -> None:
    print(f"{C.BOLD_RED}Error:{C.RESET} {msg}")


def confirm(prompt: str, default: bool = True) -> bool:
    suffix = f"{C.BOLD}[Y/n]{C.RESET}" if default else f"{C.BOLD}[y/N]{C.RESET}"
    answer = input(f"{prompt} {suffix} ").strip().lower()
    if not answer:
        return default
    return answer in ("y", "yes")


def is_disabled(entry: str) -> bool:
    """Entries starting with '#' are kept in the manifest but switched off."""
    return entry.lstrip().startswith("#")


def is_generated_file(content: str) -> bool:
    return content.lstrip().startswith(GENERATED_HEADER)


def generated_header() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return GENERATED_HEADER_TEMPLATE.format(header=GENERATED_HEADER, timestamp=ts)


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text()
    except (OSError, UnicodeDecodeError):
        return None


def _strip_header(content: str) -> str:
    """Drop the generated header so timestamps do not count as changes."""
    return "\n".join(
        line for line in content.splitlines()
        if not (line.startswith(GENERATED_HEADER)
                or line.startswith("# Run: dotctl")
                or line.startswith("# Last generated:"))
    )


def write_file(path: Path, content: str, args: argparse.Namespace) -> bool:
    """Write content unless the file already holds it. Returns True if written."""
    existing = _read_text(path) if path.exists() else None
    if existing is not None and _strip_header(existing) == _strip_header(content):
        log_verbose(f"{path} {C.DIM}(unchanged){C.RESET}", args)
        return False
    if args.dry_run:
        log(f"{C.MAGENTA}[dry-run]{C.RESET} Would write {path} ({len(content)} bytes)")
        return False
    if args.diff and existing is not None:
        diff = difflib.unified_diff(
            existing.splitlines(keepends=True),
            content.splitlines(keepends=True),
            fromfile=str(path),
            tofile=str(path) + " (new)",
        )
        print("".join(diff))
    path.parent.mkdir(parents=True, exist_ok=True)
    if existing is not None:
        backup_file(path, args)
    path.write_text(content)
    log_verbose(f"{C.GREEN}Wrote{C.RESET} {path}", args)
    return True


def remove_file(path: Path, args: argparse.Namespace) -> None:
    if args.dry_run:
        log(f"{C.MAGENTA}[dry-run]{C.RESET} Would remove {path}")
        return
    if path.exists() and not path.is_symlink():
        backup_file(path, args)
    path.unlink(missing_ok=True)
    log_verbose(f"{C.YELLOW}Removed{C.RESET} {path}", args)


def find_files(root: Path, patterns: tuple[str, ...]) -> list[Path]:
    """Files under root (outside .git) whose name matches any pattern."""
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d != ".git")
        for name in sorted(filenames):
            if any(fnmatch.fnmatch(name, p) for p in patterns):
                found.append(Path(dirpath) / name)
    return found


def _format_size(num: float) -> str:
    for unit in ("B", "Ki", "Mi", "Gi", "Ti"):
        if abs(num) < 1024 or unit == "Ti":
            return f"{num:.0f}{unit}" if unit == "B" else f"{num:.1f}{unit}"
        num /= 1024
    return f"{num:.1f}Ti"


# ---------------------------------------------------------------------------
# Subprocesses
# ---------------------------------------------------------------------------


def _stdout_is_real() -> bool:
    try:
        sys.stdout.fileno()
    except (AttributeError, OSError, ValueError):
        return False
    return True


def _shell_status(returncode: int) -> int:
    """Exit status as a shell reports it: a child killed by signal N gives 128+N."""
    return 128 - returncode if returncode < 0 else returncode


def run_command(argv: list[str], cwd: Optional[Path] = None) -> int:
    """Run a tool, streaming its output. Returns its exit status as the shell reports it."""
    if cwd is not None and not cwd.is_dir():
        error(f"directory not found: {cwd}")
        return 1
    try:
        if _stdout_is_real():
            return _shell_status(subprocess.run(argv, cwd=cwd).returncode)
        # stdout is redirected in-process (tests, MCP): relay the output
        proc = subprocess.run(argv, cwd=cwd, capture_output=True, text=True)
    except FileNotFoundError:
        error(f"command not found: {argv[0]}")
        return 127
    except PermissionError:
        error(f"permission denied: {argv[0]}")
        return 126
    if proc.stdout:
        print(proc.stdout, end="")
    if proc.stderr:
        print(proc.stderr, end="", file=sys.stderr)
    return _shell_status(proc.returncode)


def capture_command(argv: list[str], cwd: Optional[Path] = None) -> tuple[int, str]:
    """Run a tool and return (exit code, stdout)."""
    try:
        proc = subprocess.run(argv, cwd=cwd, capture_output=True, text=True)
    except (FileNotFoundError, NotADirectoryError):
        return 127, ""
    except PermissionError:
        return 126, ""
    return _shell_status(proc.returncode), proc.stdout


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


def read_manifest() -> dict[str, Any]:
    if not MANIFEST_PATH.exists():
        error(f"{MANIFEST_PATH} not found. Run 'init' first.")
        sys.exit(1)
    return json.loads(MANIFEST_PATH.read_text())


def load_manifest_or_default() -> dict[str, Any]:
    """Manifest for activation, which may run before the checkout exists."""
    if MANIFEST_PATH.exists():
        return json.loads(MANIFEST_PATH.read_text())
    log(f"{C.DIM}{MANIFEST_PATH} not found, using built-in defaults{C.RESET}")
    return default_manifest()


def write_manifest(data: dict[str, Any], args: argparse.Namespace) -> None:
    data["updated"] = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    write_file(MANIFEST_PATH, content, args)


# ---------------------------------------------------------------------------
# Package list composer
# ---------------------------------------------------------------------------


def package_list(manifest: dict[str, Any], list_name: str) -> list[PackageRef]:
    lists = manifest.get("packages", {})
    if list_name not in lists:
        raise ManifestError(f"unknown package list '{list_name}'")
    return [PackageRef.parse(e) for e in lists[list_name] if not is_disabled(e)]


def compose_packages(manifest: dict[str, Any], target: str) -> list[PackageRef]:
    """Merge the target's package lists in order, keeping first occurrences."""
    targets = manifest.get("targets", {})
    if target not in targets:
        raise ManifestError(f"unknown target '{target}'. Options: {', '.join(targets)}")
    seen: set[PackageRef] = set()
    result: list[PackageRef] = []
    for list_name in targets[target]:
        for ref in package_list(manifest, list_name):
            if ref in seen:
                continue
            seen.add(ref)
            result.append(ref)
    return result


def count_duplicates(manifest: dict[str, Any], target: str) -> int:
    raw = sum(len(package_list(manifest, n)) for n in manifest["targets"][target])
    return raw - len(compose_packages(manifest, target))


# ---------------------------------------------------------------------------
# Module aggregator
# ---------------------------------------------------------------------------


def overlay(base: dict[str, Any], fragment: dict[str, Any]) -> dict[str, Any]:
    """Overlay fragment onto base. Mappings merge per key, anything else is replaced."""
    merged = dict(base)
    for key, value in fragment.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = overlay(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def evaluate_modules(manifest: dict[str, Any]) -> dict[str, Any]:
    tree: dict[str, Any] = {}
    for fragment in manifest.get("modules", []):
        tree = overlay(tree, fragment.get("settings", {}))
    for target, (section, key) in TARGET_TREE_KEYS.items():
        if target in manifest.get("targets", {}):
            refs = [str(r) for r in compose_packages(manifest, target)]
            tree = overlay(tree, {section: {key: refs}})
    return tree


def lookup(tree: dict[str, Any], dotted: str) -> Any:
    """Resolve a dotted key, preferring the longest key that exists at each level
    so names like 'com.apple.finder' stay reachable."""
    node: Any = tree
    parts = dotted.split(".")
    i = 0
    while i < len(parts):
        if not isinstance(node, dict):
            raise ManifestError(f"no such key '{dotted}'")
        for j in range(len(parts), i, -1):
            key = ".".join(parts[i:j])
            if key in node:
                node = node[key]
                i = j
                break
        else:
            raise ManifestError(f"no such key '{dotted}'")
    return node


# ---------------------------------------------------------------------------
# Generators
# ---------------------------------------------------------------------------


def render_package_nix(refs: list[PackageRef], target: str) -> str:
    lines = [generated_header(), f"# Composed {target} package list", "{ pkgs, inputs }:", "", "["]
    lines.extend(f"  {ref.to_nix()}" for ref in refs)
    lines.append("]")
    return "\n".join(lines) + "\n"


def render_brewfile(tree: dict[str, Any]) -> str:
    brew = tree.get("homebrew", {})
    taps = tree.get("nix-homebrew", {}).get("taps", {})
    lines = [generated_header()]
    lines.extend(f'tap "{name}"' for name in taps)
    lines.extend(f'brew "{name}"' for name in brew.get("brews", []) if not is_disabled(name))
    lines.extend(f'cask "{name}"' for name in brew.get("casks", []) if not is_disabled(name))
    lines.extend(f'mas "{name}", id: {app_id}' for name, app_id in brew.get("masApps", {}).items())
    return "\n".join(lines) + "\n"


def generate_outputs(manifest: dict[str, Any]) -> dict[str, str]:
    outputs: dict[str, str] = {}
    for target in manifest.get("targets", {}):
        outputs[f"{target}-packages.nix"] = render_package_nix(
            compose_packages(manifest, target), target
        )
    tree = evaluate_modules(manifest)
    if tree.get("homebrew", {}).get("enable"):
        outputs["Brewfile"] = render_brewfile(tree)
    return outputs


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


def _activation_settings(ctx: ActivationContext) -> dict[str, Any]:
    return ctx.manifest.get("activation", {})


def _chown(path: Path, owner: Optional[str]) -> None:
    """Hand a created entry to the configured owner when running as root."""
    if not owner or not hasattr(os, "geteuid") or os.geteuid() != 0:
        return
    import grp
    import pwd

    try:
        entry = pwd.getpwnam(owner)
    except KeyError:
        raise ActivationError(f"unknown owner '{owner}'") from None
    try:
        gid = grp.getgrnam(OWNER_GROUP).gr_gid
    except KeyError:
        gid = entry.pw_gid
    os.lchown(path, entry.pw_uid, gid)


def _run_step_command(ctx: ActivationContext, argv: list[str],
                      cwd: Optional[Path] = None) -> None:
    ctx.commands.append(argv)
    if ctx.args.dry_run:
        log(f"{C.MAGENTA}[dry-run]{C.RESET} Would run: {shlex.join(argv)}")
        return
    code = run_command(argv, cwd=cwd)
    if code != 0:
        raise ActivationError(f"'{shlex.join(argv)}' exited with status {code}")


def link_target(link: Path) -> Path:
    """Absolute, normalized target of a symlink without following further links."""
    raw = Path(os.readlink(link))
    if not raw.is_absolute():
        raw = link.parent / raw
    return Path(os.path.normpath(raw))


def points_into(link: Path, roots: tuple[Path, ...]) -> bool:
    target = link_target(link)
    return any(target.is_relative_to(Path(os.path.normpath(r))) for r in roots)


def sync_managed_links(ctx: ActivationContext, link_dir: Path, desired: dict[str, Path],
                       managed_roots: tuple[Path, ...], pattern: str) -> None:
    """Converge link_dir to desired links. Only links into managed_roots are removed."""
    dry = ctx.args.dry_run
    owner = _activation_settings(ctx).get("owner")
    if not link_dir.is_dir():
        if not desired:
            return
        ctx.record("mkdir", link_dir)
        if not dry:
            link_dir.mkdir(parents=True, exist_ok=True)
    else:
        for entry in sorted(link_dir.iterdir()):
            if not entry.is_symlink() or not fnmatch.fnmatch(entry.name, pattern):
                continue
            if not points_into(entry, managed_roots):
                continue
            wanted = desired.get(entry.name)
            if wanted is not None and link_target(entry) == Path(os.path.normpath(wanted)):
                continue
            ctx.record("unlink", entry, os.readlink(entry))
            if not dry:
                entry.unlink()

    for name, target in sorted(desired.items()):
        link = link_dir / name
        if link.is_symlink() or link.exists():
            if link.is_symlink() and link_target(link) == Path(os.path.normpath(target)):
                continue
            # In dry-run stale managed links are still on disk
            stale = dry and link.is_symlink() and points_into(link, managed_roots)
            if not stale:
                log(f"{C.BOLD_YELLOW}Warning:{C.RESET} {link} exists and is not managed here, preserving")
                continue
        ctx.record("link", link, str(target))
        if not dry:
            link.symlink_to(target)
            _chown(link, owner)


def resolve_store_path(ref: str, manifest: dict[str, Any]) -> Path:
    """Realise a package reference and return its store path."""
    if ref.startswith("/"):
        return Path(ref)
    pkg = PackageRef.parse(ref)
    flake = manifest.get("inputs", {}).get(pkg.source, pkg.source)
    code, out = capture_command(["nix", "build", "--no-link", "--print-out-paths", f"{flake}#{pkg.attr}"])
    paths = out.split()
    if code != 0 or not paths:
        raise ActivationError(f"could not build '{ref}' (nix exited with status {code})")
    return Path(paths[0])


def yazi_plugin_name(store_path: Path) -> str:
    """<hash>-<name>.yazi-<version> -> <name>.yazi"""
    base = store_path.name
    _, sep, rest = base.partition("-")
    stem = (rest if sep else base).split(".yazi-", 1)[0]
    return f"{stem.removesuffix('.yazi')}.yazi"


def _plugin_refs(ctx: ActivationContext, kind: str) -> list[str]:
    return [r for r in ctx.manifest.get("plugins", {}).get(kind, []) if not is_disabled(r)]


def step_documents(ctx: ActivationContext) -> None:
    settings = _activation_settings(ctx)
    for name in settings.get("documents", []):
        path = DOCUMENTS_DIR / name
        if path.is_dir():
            log_verbose(f"{path} exists", ctx.args)
            continue
        log(f"Creating {name} directory...")
        ctx.record("mkdir", path)
        if ctx.args.dry_run:
            continue
        path.mkdir(parents=True)
        _chown(path, settings.get("owner"))


def step_dotfiles_repo(ctx: ActivationContext) -> None:
    log("Looking for dotfiles directory...")
    if DOTFILES_DIR.is_dir():
        log("dotfiles directory found.")
        return
    repo = _activation_settings(ctx).get("dotfiles_repo")
    if not repo:
        raise ActivationError(f"{DOTFILES_DIR} is missing and no dotfiles_repo is configured")
    log("Cloning dotfiles repository...")
    ctx.record("clone", DOTFILES_DIR, repo)
    _run_step_command(ctx, ["git", "clone", repo, str(DOTFILES_DIR)])
    if not ctx.args.dry_run and MANIFEST_PATH.exists():
        ctx.manifest = json.loads(MANIFEST_PATH.read_text())
        log_verbose(f"Loaded {MANIFEST_PATH} from the fresh checkout", ctx.args)


def step_deploy(ctx: ActivationContext) -> None:
    if not _activation_settings(ctx).get("deploy", False):
        log_verbose("dotter deploy disabled, skipping", ctx.args)
        return
    log("Deploying dotfiles with dotter...")
    _run_step_command(ctx, ["dotter", "deploy", "-f", "-y", "-v"], cwd=DOTFILES_DIR)


def step_yazi_plugins(ctx: ActivationContext) -> None:
    info = PLUGIN_DIRS["yazi"]
    desired: dict[str, Path] = {}
    for ref in _plugin_refs(ctx, "yazi"):
        path = resolve_store_path(ref, ctx.manifest)
        desired[yazi_plugin_name(path)] = path
    sync_managed_links(ctx, info["dir"], desired, (STORE_DIR,), info["pattern"])
    log(f"{info['label']} plugins: {len(desired)} linked")


def step_nushell_plugins(ctx: ActivationContext) -> None:
    info = PLUGIN_DIRS["nushell"]
    desired: dict[str, Path] = {}
    for ref in _plugin_refs(ctx, "nushell"):
        store_path = resolve_store_path(ref, ctx.manifest)
        for binary in sorted((store_path / "bin").glob("nu_plugin_*")):
            if binary.is_file():
                desired[binary.name] = binary
    sync_managed_links(ctx, info["dir"], desired, (STORE_DIR,), info["pattern"])
    log(f"{info['label']} plugins: {len(desired)} linked")


def step_skills(ctx: ActivationContext) -> None:
    settings = _activation_settings(ctx)
    source = settings.get("skills_source")
    if not source:
        log_verbose("no skills_source configured, skipping", ctx.args)
        return
    source_dir = Path(source).expanduser()
    if not source_dir.is_dir():
        log(f"{C.DIM}Skills source {source_dir} not found, skipping{C.RESET}")
        return
    target = Path(settings.get("skills_target") or SKILLS_TARGET).expanduser()
    desired = {d.name: d for d in sorted(source_dir.iterdir()) if d.is_dir()}
    sync_managed_links(ctx, target, desired, (source_dir, STORE_DIR), "*")
    log(f"Skills: {len(desired)} linked into {target}")


ACTIVATION_STEPS: list[tuple[str, str, Callable[[ActivationContext], None]]] = [
    ("documents", "directories", step_documents),
    ("dotfiles-repo", "dotfiles checkout", step_dotfiles_repo),
    ("deploy", "dotfiles deployment", step_deploy),
    ("yazi-plugins", "Yazi plugins", step_yazi_plugins),
    ("nushell-plugins", "Nushell plugins", step_nushell_plugins),
    ("skills", "assistant skills", step_skills),
]


def run_activation(manifest: dict[str, Any], args: argparse.Namespace,
                   only: Optional[list[str]] = None) -> ActivationContext:
    """Run the activation steps in order. The first failure aborts the rest."""
    names = [name for name, _, _ in ACTIVATION_STEPS]
    unknown = [s for s in only or [] if s not in names]
    if unknown:
        raise ActivationError(f"unknown step(s): {', '.join(unknown)}. Options: {', '.join(names)}")
    ctx = ActivationContext(manifest=manifest, args=args)
    for name, label, step in ACTIVATION_STEPS:
        if only and name not in only:
            continue
        ctx.step = name
        section_header(f"Setting up {label}...")
        try:
            step(ctx)
        except OSError as e:
            raise ActivationError(f"step '{name}' failed: {e}") from e
    return ctx


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def git_tracked_files(root: Path) -> list[str]:
    code, out = capture_command(["git", "ls-files"], cwd=root)
    if code != 0:
        return []
    return [line for line in out.splitlines() if line]


def git_is_tracked(root: Path, path: str) -> bool:
    code, _ = capture_command(["git", "ls-files", "--error-unmatch", path], cwd=root)
    return code == 0


def git_is_ignored(root: Path, path: str) -> bool:
    code, out = capture_command(["git", "check-ignore", path], cwd=root)
    return code == 0 and bool(out.strip())


def dotter_files(config_path: Path) -> list[tuple[str, str, str]]:
    """(source, target, group) for every [<group>.files] entry of a dotter config."""
    if not config_path.exists():
        return []
    try:
        data = tomllib.loads(config_path.read_text())
    except (tomllib.TOMLDecodeError, UnicodeDecodeError):
        return []
    found: list[tuple[str, str, str]] = []
    for group, table in data.items():
        if not isinstance(table, dict) or not isinstance(table.get("files"), dict):
            continue
        for source, target in table["files"].items():
            if isinstance(target, dict):
                target = target.get("target", "")
            found.append((source, str(target), group))
    return found


def strip_json_comments(text: str) -> str:
    """Remove // and /* */ comments outside strings, then trailing commas."""
    out: list[str] = []
    i, n = 0, len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 1
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
            out.append(ch)
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
            continue
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
            continue
        else:
            out.append(ch)
        i += 1
    return re.sub(r",(\s*[}\]])", r"\1", "".join(out))


def rule_dotter_configs_exist(root: Path, args: argparse.Namespace) -> RuleResult:
    global_toml = root / ".dotter" / "global.toml"
    issues = []
    if not global_toml.exists():
        issues.append(Issue("error", "Dotter global.toml not found", str(global_toml)))
    return RuleResult("Dotter configuration files exist", not issues, issues)


def rule_dotter_files_tracked(root: Path, args: argparse.Namespace) -> RuleResult:
    entries = []
    for name in ("global.toml", "macos.toml"):
        entries.extend(dotter_files(root / ".dotter" / name))
    log_verbose(f"Found {len(entries)} files referenced in dotter configs", args)

    issues: list[Issue] = []
    for source, _, group in entries:
        if not (root / source).exists():
            issues.append(Issue("error", f"File missing: {source} (from {group})", source))
            continue
        if git_is_tracked(root, source):
            continue
        if git_is_ignored(root, source):
            issues.append(Issue(
                "error", f"File ignored by git: {source} (from {group})", source,
                f"Add to .gitignore: !{source}",
            ))
        else:
            issues.append(Issue(
                "warning", f"File not tracked: {source} (from {group})", source,
                f"Run: git add {source}",
            ))
    passed = all(i.severity == "warning" for i in issues)
    return RuleResult("Dotter files exist and are tracked", passed, issues)


def rule_no_broken_symlinks(root: Path, args: argparse.Namespace) -> RuleResult:
    issues = []
    for name in git_tracked_files(root):
        path = root / name
        if path.is_symlink() and not path.exists():
            issues.append(Issue("error", f"Broken symlink: {name}", name))
    return RuleResult("No broken symlinks", not issues, issues)


def rule_toml_files_valid(root: Path, args: argparse.Namespace) -> RuleResult:
    files = [f for f in git_tracked_files(root) if f.endswith(".toml")]
    issues = []
    for name in files:
        try:
            tomllib.loads((root / name).read_text())
        except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
            issues.append(Issue("error", f"Invalid TOML syntax: {name} ({e})", name))
    return RuleResult(f"All {len(files)} TOML files are valid", not issues, issues)


def rule_json_files_valid(root: Path, args: argparse.Namespace) -> RuleResult:
    files = [f for f in git_tracked_files(root) if f.endswith((".json", ".jsonc"))]
    issues = []
    for name in files:
        text = _read_text(root / name)
        if text is None:
            issues.append(Issue("error", f"Unreadable JSON file: {name}", name))
            continue
        try:
            json.loads(text)
            continue
        except json.JSONDecodeError:
            pass
        try:
            json.loads(strip_json_comments(text))
        except json.JSONDecodeError:
            if not name.endswith(".jsonc"):
                issues.append(Issue("error", f"Invalid JSON syntax: {name}", name))
    return RuleResult(f"All {len(files)} JSON files are valid", not issues, issues)


VALIDATION_RULES: list[Callable[[Path, argparse.Namespace], RuleResult]] = [
    rule_dotter_configs_exist,
    rule_dotter_files_tracked,
    rule_no_broken_symlinks,
    rule_toml_files_valid,
    rule_json_files_valid,
]


def run_validation(root: Path, args: argparse.Namespace) -> list[RuleResult]:
    return [rule(root, args) for rule in VALIDATION_RULES]


def print_result(result: RuleResult) -> None:
    if result.passed:
        print(f"{C.GREEN}✓ {result.rule_name}{C.RESET}")
    else:
        print(f"{C.RED}✗ {result.rule_name}{C.RESET}")
    for issue in result.issues:
        file_str = f" ({issue.file})" if issue.file else ""
        color, symbol = {
            "error": (C.RED, "✗"),
            "warning": (C.YELLOW, "⚠"),
        }.get(issue.severity, (C.CYAN, "ℹ"))
        print(f"{color}{symbol}   {issue.message}{file_str}{C.RESET}")
        if issue.fix_suggestion:
            print(f"{C.CYAN}ℹ     {issue.fix_suggestion}{C.RESET}")


def summarize_validation(results: list[RuleResult], fix: bool) -> int:
    print(f"\n{C.BOLD}{'=' * 60}{C.RESET}")
    issues = [i for r in results for i in r.issues]
    errors = sum(1 for i in issues if i.severity == "error")
    warnings = len(issues) - errors

    if errors:
        print(f"{C.RED}✗ Validation failed: {len(issues)} issue(s) found "
              f"({errors} errors, {warnings} warnings){C.RESET}")
        if fix:
            print(f"\n{C.BOLD}Fix suggestions:{C.RESET}\n")
            ignored = [i.file for i in issues
                       if i.file and i.fix_suggestion and ".gitignore" in i.fix_suggestion]
            if ignored:
                print(f"{C.CYAN}ℹ Add these lines to .gitignore:{C.RESET}")
                for name in ignored:
                    print(f"{C.GREEN}  !{name}{C.RESET}")
                print()
            untracked = [i.file for i in issues
                         if i.file and i.fix_suggestion and "git add" in i.fix_suggestion]
            if untracked:
                print(f"{C.CYAN}ℹ Run this command to track files:{C.RESET}")
                print(f"{C.GREEN}  git add {' '.join(untracked)}{C.RESET}")
                print()
        return 1
    if warnings:
        print(f"{C.YELLOW}⚠ Validation completed with {warnings} warning(s){C.RESET}")
        return 0
    print(f"{C.GREEN}✓ All validations passed!{C.RESET}\n")
    return 0


# ---------------------------------------------------------------------------
# Native recipe handlers
# ---------------------------------------------------------------------------


def _with(args: argparse.Namespace, **overrides: Any) -> argparse.Namespace:
    return argparse.Namespace(**{**vars(args), **overrides})


def cmd_init(args: argparse.Namespace, params: dict[str, Any]) -> int:
    begin_backup("init")
    if MANIFEST_PATH.exists():
        log(f"{C.BOLD_YELLOW}Warning:{C.RESET} {MANIFEST_PATH} already exists and will be replaced.")
        if not args.yes and not confirm("  Proceed?", default=False):
            print(f"  {C.DIM}Aborted.{C.RESET}")
            return 1
    write_manifest(default_manifest(), args)
    log(f"Wrote {MANIFEST_PATH}")
    return 0


def cmd_status(args: argparse.Namespace, params: dict[str, Any]) -> int:
    manifest = read_manifest()

    section_header("Package targets")
    for target in manifest.get("targets", {}):
        try:
            refs = compose_packages(manifest, target)
        except ManifestError as e:
            error(str(e))
            return 1
        summary_line(target, len(refs), "packages")

    plugins = manifest.get("plugins", {})
    section_header("Plugins")
    for kind in PLUGIN_DIRS:
        summary_line(kind, len([p for p in plugins.get(kind, []) if not is_disabled(p)]), "plugins")

    modules = manifest.get("modules", [])
    section_header(f"Modules ({len(modules)})")
    for fragment in modules:
        keys = ", ".join(fragment.get("settings", {}))
        print(f"  {C.BOLD}{fragment.get('name', '?'):20s}{C.RESET} {C.DIM}{keys}{C.RESET}")

    activation = manifest.get("activation", {})
    section_header("Activation")
    print(f"  documents      {', '.join(activation.get('documents', [])) or '(none)'}")
    print(f"  dotfiles repo  {activation.get('dotfiles_repo') or '(none)'}")
    print(f"  deploy         {activation.get('deploy', False)}")
    print(f"  skills source  {activation.get('skills_source') or '(none)'}")

    section_header("Last Updated")
    print(f"  {manifest.get('updated') or 'never'}")
    print()
    return 0


def cmd_set(args: argparse.Namespace, params: dict[str, Any]) -> int:
    manifest = read_manifest()
    key, value = params["key"], params["value"]
    if key not in SETTABLE_KEYS:
        error(f"unsupported key '{key}'. Supported: {', '.join(sorted(SETTABLE_KEYS))}")
        return 1

    section, name, kind = SETTABLE_KEYS[key]
    parsed: Any = value
    if kind == "array":
        parsed = [v.strip() for v in value.split(",") if v.strip()]
    elif kind == "bool":
        lowered = value.strip().lower()
        if lowered not in ("true", "false", "yes", "no", "1", "0"):
            error(f"'{key}' expects true or false, got '{value}'")
            return 1
        parsed = lowered in ("true", "yes", "1")

    container = manifest.setdefault(section, {}) if section else manifest
    container[name] = parsed
    begin_backup("set")
    write_manifest(manifest, args)
    print(f"  {C.GREEN}Set{C.RESET} {C.BOLD}{key}{C.RESET} = {parsed}")
    return 0


def cmd_compose(args: argparse.Namespace, params: dict[str, Any]) -> int:
    manifest = read_manifest()
    targets = [params["target"]] if params.get("target") else list(manifest.get("targets", {}))
    composed: dict[str, list[str]] = {}
    try:
        for target in targets:
            composed[target] = [str(r) for r in compose_packages(manifest, target)]
            dropped = count_duplicates(manifest, target)
            if dropped:
                log_verbose(f"{target}: dropped {dropped} duplicate reference(s)", args)
    except ManifestError as e:
        error(str(e))
        return 1

    if args.json:
        print(json.dumps(composed, indent=2))
        return 0
    for target, refs in composed.items():
        section_header(f"{target} ({len(refs)})")
        for i in range(0, len(refs), 3):
            print("  " + "  ".join(f"{r:30s}" for r in refs[i:i + 3]).rstrip())
    print()
    return 0


def cmd_eval(args: argparse.Namespace, params: dict[str, Any]) -> int:
    manifest = read_manifest()
    try:
        tree = evaluate_modules(manifest)
        value = lookup(tree, params["key"]) if params.get("key") else tree
    except ManifestError as e:
        error(str(e))
        return 1
    print(json.dumps(value, indent=2, ensure_ascii=False))
    return 0


def cmd_generate(args: argparse.Namespace, params: dict[str, Any]) -> int:
    manifest = read_manifest()
    try:
        outputs = generate_outputs(manifest)
    except ManifestError as e:
        error(str(e))
        return 1

    begin_backup("generate")

    section_header(f"Generated files ({len(outputs)})")
    written = 0
    for name, content in outputs.items():
        if write_file(GENERATED_DIR / name, content, args):
            written += 1
        summary_line(name, len(content.splitlines()), "lines")

    removed = 0
    if GENERATED_DIR.exists():
        for f in sorted(GENERATED_DIR.iterdir()):
            if f.name in outputs or not f.is_file():
                continue
            text = _read_text(f)
            if text is not None and is_generated_file(text):
                remove_file(f, args)
                removed += 1

    section_header("Summary")
    dry = f" {C.MAGENTA}(dry-run){C.RESET}" if args.dry_run else ""
    print(f"  {C.BOLD}{written}{C.RESET} written, {C.BOLD}{removed}{C.RESET} stale removed.{dry}")
    print()
    return 0


def cmd_activate(args: argparse.Namespace, params: dict[str, Any]) -> int:
    manifest = load_manifest_or_default()
    try:
        ctx = run_activation(manifest, args, only=params.get("steps") or None)
    except ActivationError as e:
        error(str(e))
        return 1

    section_header("Summary")
    dry = f" {C.MAGENTA}(dry-run){C.RESET}" if args.dry_run else ""
    if ctx.changes:
        print(f"  {C.BOLD}{len(ctx.changes)}{C.RESET} filesystem change(s).{dry}")
    else:
        print(f"  {C.GREEN}Nothing to change{C.RESET} -- already up to date.{dry}")
    print()
    return 0


def cmd_validate(args: argparse.Namespace, params: dict[str, Any]) -> int:
    print(f"\n{C.BOLD}Validating dotfiles repository...{C.RESET}\n")
    results = run_validation(DOTFILES_DIR, args)
    for result in results:
        print_result(result)
    return summarize_validation(results, args.fix)


def cmd_health(args: argparse.Namespace, params: dict[str, Any]) -> int:
    def check(ok: bool, good: str, bad: str) -> None:
        print(f"  {C.GREEN}✓{C.RESET} {good}" if ok else f"  {C.RED}✗{C.RESET} {bad}")

    print("Checking dotfiles health...\n")
    print("Dotfiles directory:")
    check(DOTFILES_DIR.is_dir(), f"Found at {DOTFILES_DIR}", "Missing!")
    print("\nNix-darwin flake:")
    check((FLAKE_DIR / "flake.nix").is_file(), f"Found at {FLAKE_DIR}", "Missing!")
    print("\nDotter configuration:")
    check((DOTFILES_DIR / ".dotter" / "global.toml").is_file(), "Found", "Missing!")
    print("\nManifest:")
    check(MANIFEST_PATH.is_file(), f"Found at {MANIFEST_PATH}", "Missing! Run 'dotctl init'")
    print("\nKey tools:")
    for exe, label in HEALTH_TOOLS:
        check(shutil.which(exe) is not None, label, f"{label} not found")
    print("\nFlake status:")
    code, out = capture_command(["nix", "flake", "metadata"], cwd=FLAKE_DIR)
    if code == 0:
        for line in out.splitlines()[:5]:
            print(f"  {line}")
    else:
        print(f"  {C.RED}✗{C.RESET} Unable to read flake")
    return 0


def find_broken_symlinks(root: Path, max_depth: int = 3, limit: int = 20) -> list[Path]:
    found: list[Path] = []
    root_depth = len(root.parts)
    for dirpath, dirnames, filenames in os.walk(root):
        depth = len(Path(dirpath).parts) - root_depth
        if depth >= max_depth:
            dirnames[:] = []
        for name in sorted(dirnames + filenames):
            path = Path(dirpath) / name
            if path.is_symlink() and not path.exists():
                found.append(path)
                if len(found) >= limit:
                    return found
        dirnames[:] = sorted(d for d in dirnames if not (Path(dirpath) / d).is_symlink())
    return found


def cmd_check_links(args: argparse.Namespace, params: dict[str, Any]) -> int:
    print("Checking for broken symlinks...")
    broken = find_broken_symlinks(Path.home())
    if not broken:
        log(f"{C.GREEN}No broken symlinks found{C.RESET}")
    for path in broken:
        print(f"  {path} -> {os.readlink(path)}")
    return 0


def cmd_store_size(args: argparse.Namespace, params: dict[str, Any]) -> int:
    print("Nix store disk usage:")
    code, out = capture_command(["du", "-sh", str(STORE_DIR)])
    print(f"  {out.strip()}" if code == 0 and out else "  Unable to read nix store")

    print("\nLargest store paths:")
    code, out = capture_command(["nix", "path-info", "--all", "--json"])
    try:
        data = json.loads(out) if code == 0 else None
    except json.JSONDecodeError:
        data = None
    if data is None:
        print("  Unable to analyze store")
        return 0
    # Newer nix returns {path: info}, older a list of infos with a "path" key
    if isinstance(data, dict):
        sizes = [(info.get("narSize", 0), path) for path, info in data.items() if info]
    else:
        sizes = [(info.get("narSize", 0), info.get("path", "?")) for info in data]
    for size, path in sorted(sizes, reverse=True)[:10]:
        print(f"  {_format_size(size):>8s}  {path}")
    return 0


def cmd_show_inputs(args: argparse.Namespace, params: dict[str, Any]) -> int:
    code, out = capture_command(["nix", "flake", "metadata", "--json"], cwd=FLAKE_DIR)
    if code != 0:
        error(f"unable to read flake metadata in {FLAKE_DIR}")
        return code
    print("Flake inputs:")
    nodes = json.loads(out).get("locks", {}).get("nodes", {})
    for name, node in nodes.items():
        locked = node.get("locked")
        if locked:
            print(f"  {name}: {locked.get('rev') or locked.get('narHash')}")
    return 0


def cmd_show_generation(args: argparse.Namespace, params: dict[str, Any]) -> int:
    code, out = capture_command(["darwin-rebuild", "--list-generations"])
    lines = out.strip().splitlines()
    if code == 0 and lines:
        print(lines[-1])
    return code


def cmd_sysinfo(args: argparse.Namespace, params: dict[str, Any]) -> int:
    print("System Information")
    print("==================\n")
    print(f"Hostname: {platform.node()}")
    print(f"macOS: {platform.mac_ver()[0] or 'n/a'}")
    print(f"Architecture: {platform.machine()}\n")
    print("Nix version:")
    code, out = capture_command(["nix", "--version"])
    print(f"  {out.strip()}" if code == 0 else "  nix not found")
    print("\nCurrent generation:")
    cmd_show_generation(args, params)
    print("\nDotfiles:")
    code, out = capture_command(["git", "log", "-1", "--format=%h - %s (%cr)"], cwd=DOTFILES_DIR)
    print(f"  Last commit: {out.strip()}" if code == 0 else "  Not a git repository")
    return 0


def cmd_reload(args: argparse.Namespace, params: dict[str, Any]) -> int:
    print("Reloading shell...")
    if args.dry_run:
        log(f"{C.MAGENTA}[dry-run]{C.RESET} Would exec zsh")
        return 0
    os.execvp("zsh", ["zsh"])
    return 0


def cmd_fmt_json(args: argparse.Namespace, params: dict[str, Any]) -> int:
    print("Formatting JSON files...")
    failed = 0
    for path in find_files(DOTFILES_DIR, ("*.json",)):
        text = _read_text(path)
        try:
            data = json.loads(text) if text is not None else None
        except json.JSONDecodeError as e:
            error(f"{path}: {e}")
            failed += 1
            continue
        if data is None:
            continue
        formatted = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
        if formatted == text:
            continue
        if args.dry_run:
            log(f"{C.MAGENTA}[dry-run]{C.RESET} Would reformat {path}")
            continue
        path.write_text(formatted)
        log_verbose(f"Reformatted {path}", args)
    return 1 if failed else 0


def cmd_fmt_kdl(args: argparse.Namespace, params: dict[str, Any]) -> int:
    print("Checking KDL files...")
    print("Note: KDL formatting not yet implemented (no standard formatter available)")
    for path in find_files(DOTFILES_DIR, ("*.kdl",)):
        print(f"  {path}")
    return 0


def cmd_backup(args: argparse.Namespace, params: dict[str, Any]) -> int:
    present = [Path.home() / rel for rel in BACKUP_TARGETS
               if (Path.home() / rel).exists()]
    if args.dry_run:
        print(f"{C.MAGENTA}[dry-run]{C.RESET} Would back up {len(present)} entries to {BACKUPS_DIR}")
        for path in present:
            log_verbose(f"  {path}", args)
        return 0
    print("Creating backup...")
    backup_dir = init_backup("backup")
    count = 0
    for path in present:
        copied = backup_directory(path, args) if path.is_dir() else backup_file(path, args)
        count += int(copied)
    print(f"✓ Backup created in {backup_dir} ({count} entries)")
    return 0


def cmd_list_backups(args: argparse.Namespace, params: dict[str, Any]) -> int:
    backups = list_backups()
    print("Available backups:")
    if not backups:
        print(f"  {C.DIM}No backups found{C.RESET}")
        return 0
    for backup in backups:
        files_root = backup / "files"
        n = sum(1 for p in files_root.rglob("*") if p.is_file()) if files_root.exists() else 0
        print(f"  {C.BOLD}{backup.name}{C.RESET}  {backup_command(backup):10s} {C.DIM}{n} files{C.RESET}")
    return 0


def cmd_restore(args: argparse.Namespace, params: dict[str, Any]) -> int:
    # generate/init/set keep side backups of single files; only snapshots count here
    backup = latest_backup("backup")
    if backup is None:
        print("No backups found")
        return 1
    print(f"{C.BOLD_YELLOW}⚠️  This will restore from the most recent backup ({backup.name}){C.RESET}")
    print("Current dotfiles will be overwritten!")
    if not args.yes and not confirm("Continue?", default=False):
        print(f"  {C.DIM}Aborted.{C.RESET}")
        return 1
    restored = restore_from_backup(backup, None, args)
    if restored == 0:
        error(f"backup {backup.name} holds no files; nothing was restored")
        return 1
    dry = f" {C.MAGENTA}(dry-run){C.RESET}" if args.dry_run else ""
    print(f"✓ Restored {restored} files from {backup}{dry}")
    return 0


# ---------------------------------------------------------------------------
# Recipes
# ---------------------------------------------------------------------------

_REBUILD = ["darwin-rebuild", "switch", "--flake", "{FLAKE_DIR}"]
_SHELL_FILES = ("*.sh", ".zshrc", ".zprofile", ".zshenv", ".direnvrc")

RECIPES: dict[str, Recipe] = {r.name: r for r in [
    # help
    Recipe("help", "help", "Show all available recipes",
           handler=lambda args, params: list_recipes()),

    # deploy
    Recipe("deploy", "deploy", "Deploy dotfiles with dotter",
           [["dotter", "deploy", "-f", "-v", "-y"]], cwd="{DOTFILES_DIR}",
           before="Deploying dotfiles...", after="✓ Dotfiles deployed"),
    Recipe("deploy-to", "deploy", "Deploy dotfiles to a specific target",
           [["dotter", "deploy", "-f", "-v", "-y", "--target", "{target}"]],
           params=["target"], cwd="{DOTFILES_DIR}", before="Deploying to {target}..."),
    Recipe("deploy-dry", "deploy", "Dry run deployment (see what would change)",
           [["dotter", "deploy", "-v", "-y", "--dry-run"]], cwd="{DOTFILES_DIR}",
           before="Performing dry run..."),
    Recipe("deploy-force", "deploy", "Force deploy even if files haven't changed",
           [["dotter", "deploy", "-f", "-v", "-y", "--force"]], cwd="{DOTFILES_DIR}",
           before="Force deploying all dotfiles...", after="✓ Force deployment complete"),
    Recipe("deploy-reload", "deploy", "Deploy and reload shell",
           deps=["deploy"], handler=cmd_reload),

    # system
    Recipe("update", "system", "Update nix-darwin flake and rebuild system",
           [["nix", "flake", "update"], _REBUILD], cwd="{FLAKE_DIR}",
           before="Updating nix-darwin flake and rebuilding...",
           after="✓ System updated and rebuilt"),
    Recipe("rebuild", "system", "Just rebuild system without updating flake",
           [_REBUILD], before="Rebuilding system...", after="✓ System rebuilt"),
    Recipe("update-flake", "system", "Update flake.lock without rebuilding",
           [["nix", "flake", "update"]], cwd="{FLAKE_DIR}",
           before="Updating flake.lock...", after="✓ Flake updated"),
    Recipe("rebuild-dry", "system", "Show what would change without rebuilding",
           [["darwin-rebuild", "build", "--flake", "{FLAKE_DIR}"]]),
    Recipe("full-update", "system", "Full system update: flake + rebuild + deploy dotfiles",
           deps=["update", "deploy"], after="✓ Full system update complete"),
    Recipe("generations", "system", "List nix-darwin generations",
           [["darwin-rebuild", "--list-generations"]]),
    Recipe("rollback", "system", "Rollback to previous generation",
           [["darwin-rebuild", "--rollback"]],
           before="Rolling back to previous generation...", after="✓ Rolled back"),
    Recipe("switch-generation", "system", "Switch to specific generation",
           [_REBUILD + ["--switch-generation", "{gen}"]], params=["gen"],
           before="Switching to generation {gen}..."),

    # maintenance
    Recipe("gc", "maintenance", "Run nix garbage collection",
           [["nix-collect-garbage", "-d"]],
           before="Running garbage collection...", after="✓ Garbage collection complete"),
    Recipe("deep-clean", "maintenance", "Deep clean: gc + optimize store",
           [["nix-collect-garbage", "-d"], ["nix", "store", "optimise"]],
           before="Running deep clean...", after="✓ Deep clean complete"),
    Recipe("clean-generations", "maintenance", "Delete old system generations (keeps last 5)",
           [["sudo", "nix-env", "--delete-generations", "+5",
             "--profile", "/nix/var/nix/profiles/system"]],
           before="Deleting old generations (keeping last 5)...",
           after="✓ Old generations cleaned"),
    Recipe("full-clean", "maintenance", "Full cleanup: generations + gc + optimize",
           [["nix", "store", "optimise"]], deps=["clean-generations", "gc"],
           before="Optimizing nix store...", after="✓ Full cleanup complete"),
    Recipe("health", "maintenance", "Check health of dotfiles setup", handler=cmd_health),
    Recipe("check-links", "maintenance", "Check for broken symlinks in home directory",
           handler=cmd_check_links),
    Recipe("store-size", "maintenance", "Show disk usage of nix store", handler=cmd_store_size),

    # dev
    Recipe("edit-flake", "dev", "Edit nix-darwin flake in Helix",
           [["hx", "{FLAKE_DIR}/flake.nix"]]),
    Recipe("edit-dotter", "dev", "Edit dotter configuration",
           [["hx", "{DOTFILES_DIR}/.dotter/global.toml", "{DOTFILES_DIR}/.dotter/macos.toml"]]),
    Recipe("edit-manifest", "dev", "Edit the dotctl manifest",
           [["hx", "{DOTFILES_DIR}/dotctl.json"]]),
    Recipe("edit-zsh", "dev", "Edit zshrc", [["hx", "{DOTFILES_DIR}/.zshrc"]]),
    Recipe("edit-helix", "dev", "Edit Helix config",
           [["hx", "{DOTFILES_DIR}/.config/helix/config.toml"]]),
    Recipe("edit-ghostty", "dev", "Edit Ghostty config",
           [["hx", "{DOTFILES_DIR}/.config/ghostty/config"]]),
    Recipe("reload", "dev", "Reload shell configuration without restarting", handler=cmd_reload),
    Recipe("show-inputs", "dev", "Show flake inputs and their versions", handler=cmd_show_inputs),
    Recipe("update-input", "dev", "Update specific flake input",
           [["nix", "flake", "lock", "--update-input", "{input}"]], params=["input"],
           cwd="{FLAKE_DIR}", before="Updating {input}...", after="✓ {input} updated"),
    Recipe("install-hooks", "dev", "Install pre-commit hooks (run once per clone)",
           [["pre-commit", "install"]], cwd="{DOTFILES_DIR}",
           before="Installing pre-commit hooks...", after="✓ Git hooks installed"),
    Recipe("update-hooks", "dev", "Update pre-commit hook versions",
           [["pre-commit", "autoupdate"]], cwd="{DOTFILES_DIR}",
           before="Updating pre-commit hook versions...", after="✓ Hooks updated"),
    Recipe("uninstall-hooks", "dev", "Uninstall pre-commit hooks",
           [["pre-commit", "uninstall"]], cwd="{DOTFILES_DIR}",
           before="Uninstalling pre-commit hooks...", after="✓ Git hooks uninstalled"),

    # format
    Recipe("fmt-nix", "format", "Format all Nix files in dotfiles",
           [["nixfmt", "{file}"]], files=("*.nix",),
           before="Formatting Nix files...", after="✓ Nix files formatted"),
    Recipe("fmt-shell", "format", "Format all shell scripts",
           [["shfmt", "-w", "-i", "0", "-ci", "{file}"]], files=_SHELL_FILES,
           before="Formatting shell scripts...", after="✓ Shell files formatted"),
    Recipe("fmt-toml", "format", "Format all TOML files",
           [["taplo", "format", "{file}"]], files=("*.toml",),
           before="Formatting TOML files...", after="✓ TOML files formatted"),
    Recipe("fmt-json", "format", "Format all JSON files", handler=cmd_fmt_json,
           after="✓ JSON files formatted"),
    Recipe("fmt-kdl", "format", "List KDL files (no standard formatter)", handler=cmd_fmt_kdl),
    Recipe("fmt", "format", "Format all supported file types",
           deps=["fmt-nix", "fmt-shell", "fmt-toml", "fmt-json"],
           after="✓ All files formatted"),

    # lint
    Recipe("lint-shell", "lint", "Lint shell scripts with shellcheck",
           [["shellcheck", "{file}"]], files=("*.sh",),
           before="Linting shell scripts...", after="✓ Shell scripts checked"),
    Recipe("lint-nix", "lint", "Lint Nix files with statix",
           [["statix", "check", "{file}"]], files=("*.nix",), ignore_errors=True,
           before="Linting Nix files..."),
    Recipe("check-flake", "lint", "Check nix flake for issues",
           [["nix", "flake", "check"]], cwd="{FLAKE_DIR}", before="Checking nix flake..."),
    Recipe("check", "lint", "Run all checks",
           deps=["lint-shell", "check-flake"], after="✓ All checks passed"),

    # quick
    Recipe("qed", "quick", "Quick edit and deploy workflow",
           [["hx", "{DOTFILES_DIR}/{file}"]], params=["file"], then=["deploy"]),
    Recipe("q", "quick", "Quick system rebuild (most common operation)", deps=["rebuild"]),
    Recipe("qz", "quick", "Quick edit zshrc and reload", deps=["edit-zsh", "reload"]),
    Recipe("qf", "quick", "Quick edit flake and rebuild", deps=["edit-flake", "rebuild"]),
    Recipe("qc", "quick", "Quick format and check", deps=["fmt", "check"]),

    # info
    Recipe("sysinfo", "info", "Show system information", handler=cmd_sysinfo),
    Recipe("packages", "info", "Show installed packages from nix",
           [["nix-env", "-q"]], before="Installed nix packages:"),
    Recipe("search", "info", "Search for a package in nixpkgs",
           [["nix", "search", "nixpkgs", "{query}"]], params=["query"],
           before="Searching for: {query}"),
    Recipe("show-generation", "info", "Show what's in the current nix-darwin generation",
           handler=cmd_show_generation),

    # backup
    Recipe("backup", "backup", "Backup current dotfiles before deploying", handler=cmd_backup),
    Recipe("list-backups", "backup", "List all backups", handler=cmd_list_backups),
    Recipe("restore", "backup", "Restore from most recent backup", handler=cmd_restore),

    # validation
    Recipe("validate", "validation", "Validate dotfiles repository", handler=cmd_validate),
    Recipe("validate-verbose", "validation", "Validate dotfiles with verbose output",
           handler=lambda args, params: cmd_validate(_with(args, verbose=True), params)),
    Recipe("validate-fix", "validation", "Validate dotfiles and show fix suggestions",
           handler=lambda args, params: cmd_validate(_with(args, fix=True), params)),
    Recipe("validate-flake", "validation", "Validate nix-darwin flake builds correctly",
           [["nix", "flake", "check"], ["darwin-rebuild", "build", "--flake", "{FLAKE_DIR}"]],
           cwd="{FLAKE_DIR}", before="Validating nix-darwin configuration...",
           after="✓ Flake validation passed"),
    Recipe("pre-commit-all", "validation", "Run all pre-commit hooks on all files",
           [["pre-commit", "run", "--all-files"]], cwd="{DOTFILES_DIR}",
           before="Running pre-commit on all files..."),
    Recipe("pre-commit", "validation", "Manual pre-commit checks",
           deps=["validate", "check", "fmt"], after="✓ Manual pre-commit checks passed"),

    # perf
    Recipe("bench-shell", "perf", "Benchmark shell startup time (zsh)",
           [["hyperfine", "--warmup", "3", "--runs", "10", "zsh -i -c exit"]],
           before="Benchmarking zsh startup time..."),
    Recipe("bench-shell-verbose", "perf", "Benchmark shell startup with detailed breakdown",
           [["hyperfine", "--warmup", "3", "--runs", "10",
             "--export-markdown", "/tmp/shell-bench.md", "zsh -i -c exit"],
            ["cat", "/tmp/shell-bench.md"]],
           before="Benchmarking zsh startup with profiling..."),
    Recipe("bench-shell-compare", "perf", "Compare shell startup: current vs minimal config",
           [["hyperfine", "--warmup", "3", "--runs", "10",
             "--command-name", "current", "zsh -i -c exit",
             "--command-name", "minimal", "zsh --no-rcs -c exit"]],
           before="Comparing shell startup times..."),
    Recipe("profile-shell", "perf", "Profile zsh startup to identify slow components",
           [["zsh", "-i", "-c", "zprof"]], before="Profiling zsh startup...",
           after="Add 'zmodload zsh/zprof' to top of .zshrc and 'zprof' to bottom for detailed profiling"),
    Recipe("bench-deploy", "perf", "Benchmark dotter deployment",
           [["hyperfine", "--warmup", "2", "--runs", "5", "dotter deploy -f -y"]],
           cwd="{DOTFILES_DIR}", before="Benchmarking dotter deployment..."),
    Recipe("bench-rebuild", "perf", "Benchmark nix-darwin rebuild",
           [["hyperfine", "--warmup", "1", "--runs", "3", "darwin-rebuild build --flake {FLAKE_DIR}"]],
           before="Benchmarking darwin-rebuild (this will take a while)..."),
    Recipe("bench-all", "perf", "Run all performance benchmarks",
           deps=["bench-shell", "bench-deploy"], after="✓ All benchmarks complete"),

    # nix
    Recipe("init", "nix", "Write the default manifest", handler=cmd_init),
    Recipe("status", "nix", "Show manifest summary", handler=cmd_status),
    Recipe("set", "nix", "Update a manifest field", params=["key", "value"], handler=cmd_set),
    Recipe("compose", "nix", "Print composed package lists", params=["target?"],
           handler=cmd_compose),
    Recipe("eval", "nix", "Print the evaluated configuration tree", params=["key?"],
           handler=cmd_eval),
    Recipe("generate", "nix", "Render package lists and Brewfile", handler=cmd_generate),
    Recipe("activate", "nix", "Run activation steps (all, or the named ones)",
           params=["steps*"], handler=cmd_activate),
]}

ALIASES: dict[str, str] = {
    "d": "deploy", "dt": "deploy-to", "dd": "deploy-dry", "df": "deploy-force",
    "dr": "deploy-reload", "u": "update", "r": "rebuild", "uf": "update-flake",
    "rd": "rebuild-dry", "fu": "full-update", "g": "generations", "rb": "rollback",
    "sg": "switch-generation", "clean": "gc", "dc": "deep-clean",
    "cg": "clean-generations", "fc": "full-clean", "h": "health", "cl": "check-links",
    "ss": "store-size", "ef": "edit-flake", "ed": "edit-dotter", "em": "edit-manifest",
    "ez": "edit-zsh", "eh": "edit-helix", "egg": "edit-ghostty", "rl": "reload",
    "si": "show-inputs", "ui": "update-input", "fn": "fmt-nix", "fs": "fmt-shell",
    "ft": "fmt-toml", "fj": "fmt-json", "fk": "fmt-kdl", "f": "fmt", "ls": "lint-shell",
    "ln": "lint-nix", "cf": "check-flake", "c": "check", "info": "sysinfo",
    "i": "sysinfo", "pkgs": "packages", "gen": "show-generation", "bk": "backup",
    "lb": "list-backups", "v": "validate", "vv": "validate-verbose",
    "vf": "validate-fix", "vfl": "validate-flake", "ih": "install-hooks",
    "pca": "pre-commit-all", "uh": "update-hooks", "pc": "pre-commit",
    "bs": "bench-shell", "bsv": "bench-shell-verbose", "bsc": "bench-shell-compare",
    "ps": "profile-shell", "bd": "bench-deploy", "br": "bench-rebuild",
    "ba": "bench-all", "act": "activate",
    # semantic
    "update-all": "full-update", "deploy-all": "deploy", "clean-all": "full-clean",
    "rebuild-system": "rebuild", "edit-config": "edit-flake", "show-health": "health",
    "format": "fmt", "lint": "check", "build": "rebuild",
    "deploy-and-reload": "deploy-reload", "quick": "q",
    # typos
    "depoly": "deploy", "deplyo": "deploy", "udpate": "update", "updat": "update",
    "rebulid": "rebuild", "rebiuld": "rebuild", "heatlh": "health", "helath": "health",
    "clen": "gc", "clearn": "gc", "fromat": "fmt", "fomrat": "fmt",
    # ultra-short
    "e": "edit-flake", "b": "rebuild", "t": "health",
}


def resolve_recipe(name: str) -> Optional[Recipe]:
    return RECIPES.get(ALIASES.get(name, name))


def bind_params(recipe: Recipe, values: list[str]) -> dict[str, Any]:
    """Bind positional values: 'x' required, 'x?' optional, 'x*' takes the rest."""
    bound: dict[str, Any] = {}
    remaining = list(values)
    for param in recipe.params:
        if param.endswith("*"):
            bound[param[:-1]] = remaining
            remaining = []
        elif param.endswith("?"):
            bound[param[:-1]] = remaining.pop(0) if remaining else ""
        elif remaining:
            bound[param] = remaining.pop(0)
        else:
            raise ValueError(f"recipe '{recipe.name}' requires argument '{param}'")
    if remaining:
        raise ValueError(
            f"recipe '{recipe.name}' got {len(values)} argument(s), "
            f"usage: {recipe.name} {' '.join(recipe.params)}".rstrip()
        )
    return bound


def _expand(template: str, variables: dict[str, str]) -> str:
    return template.format_map(variables)


def _run_recipe_commands(recipe: Recipe, variables: dict[str, str],
                         args: argparse.Namespace) -> int:
    cwd = Path(_expand(recipe.cwd, variables)) if recipe.cwd else None
    files = find_files(DOTFILES_DIR, recipe.files) if recipe.files else [None]
    for file in files:
        scoped = dict(variables, file=str(file)) if file is not None else variables
        for template in recipe.commands:
            argv = [_expand(t, scoped) for t in template]
            if args.dry_run:
                log(f"{C.MAGENTA}[dry-run]{C.RESET} Would run: {shlex.join(argv)}")
                continue
            log_verbose(f"$ {shlex.join(argv)}", args)
            code = run_command(argv, cwd=cwd)
            if code == 0:
                continue
            if recipe.ignore_errors:
                log(f"{C.DIM}Note: {argv[0]} exited with status {code}, continuing{C.RESET}")
                continue
            return code
    return 0


def run_recipe(name: str, values: list[str], args: argparse.Namespace,
               _ran: Optional[set[str]] = None) -> int:
    """Run a recipe with its dependencies. Returns the first non-zero exit code."""
    recipe = resolve_recipe(name)
    if recipe is None:
        error(f"no such recipe '{name}'")
        return 1
    try:
        bound = bind_params(recipe, values)
    except ValueError as e:
        error(str(e))
        return 1

    ran = _ran if _ran is not None else set()
    for dep in recipe.deps:
        if dep in ran:
            continue
        code = run_recipe(dep, [], args, ran)
        if code:
            return code

    variables = {"FLAKE_DIR": str(FLAKE_DIR), "DOTFILES_DIR": str(DOTFILES_DIR)}
    variables.update({k: v for k, v in bound.items() if isinstance(v, str)})
    if recipe.before:
        print(_expand(recipe.before, variables))
    code = _run_recipe_commands(recipe, variables, args)
    if code == 0 and recipe.handler is not None:
        code = recipe.handler(args, bound)
    if code:
        return code
    if recipe.after:
        print(_expand(recipe.after, variables))
    ran.add(recipe.name)

    for dep in recipe.then:
        if dep in ran:
            continue
        code = run_recipe(dep, [], args, ran)
        if code:
            return code
    return 0


def list_recipes() -> int:
    aliases: dict[str, list[str]] = {}
    for alias, target in ALIASES.items():
        aliases.setdefault(target, []).append(alias)
    groups: dict[str, list[Recipe]] = {}
    for recipe in RECIPES.values():
        groups.setdefault(recipe.group, []).append(recipe)

    print("Available recipes:")
    for group, recipes in groups.items():
        print(f"    {C.BOLD_CYAN}[{group}]{C.RESET}")
        for recipe in recipes:
            sig = " ".join([recipe.name, *recipe.params])
            alias_str = f" {C.DIM}[alias: {', '.join(aliases[recipe.name])}]{C.RESET}" if recipe.name in aliases else ""
            print(f"    {sig:28s} {C.BLUE}# {recipe.doc}{C.RESET}{alias_str}")
    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dotctl",
        description="Recipes for a nix-darwin + dotter development environment.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print commands and changes without running them")
    parser.add_argument("--diff", action="store_true", help="Show diffs when rewriting generated files")
    parser.add_argument("-v", "--verbose", action="store_true", help="Detailed output")
    parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation prompts")
    parser.add_argument("--fix", action="store_true", help="Show fix suggestions when validating")
    parser.add_argument("--json", action="store_true", help="Machine-readable output where supported")
    parser.add_argument("recipe", nargs="?", help="Recipe name or alias (omit to list recipes)")
    parser.add_argument("params", nargs="*", help="Recipe arguments")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_intermixed_args(argv)

    if not args.recipe:
        list_recipes()
        sys.exit(0)

    sys.exit(run_recipe(args.recipe, args.params, args))


if __name__ == "__main__":
    main()
