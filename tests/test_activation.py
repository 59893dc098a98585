"""Tests for the activation steps and runner."""

import os
import sys
from pathlib import Path

import pytest

from tests.conftest import make_args, make_store_path, seed_manifest

mod = sys.modules["dotctl"]


def base_manifest(**activation):
    settings = {
        "documents": ["bioinformatics", "hacking", "screenshots"],
        "dotfiles_repo": "https://example.invalid/dotfiles.git",
        "deploy": False,
        "skills_source": "",
    }
    settings.update(activation)
    return {
        "packages": {"common": []},
        "targets": {"home": ["common"]},
        "plugins": {"yazi": [], "nushell": []},
        "activation": settings,
    }


@pytest.fixture
def fake_git(monkeypatch):
    """Pretend 'git clone' succeeds by creating the destination directory."""
    calls = []

    def fake_run(argv, cwd=None):
        calls.append(list(argv))
        if argv[:2] == ["git", "clone"]:
            Path(argv[3]).mkdir(parents=True)
        return 0

    monkeypatch.setattr(mod, "run_command", fake_run)
    return calls


class TestYaziPluginName:
    @pytest.mark.parametrize("basename, expected", [
        ("a1b2c3-sudo.yazi-0-unstable-2025-01-01", "sudo.yazi"),
        ("a1b2c3-smart-enter.yazi-25.2.7", "smart-enter.yazi"),
        ("a1b2c3-git.yazi", "git.yazi"),
        ("a1b2c3-starship", "starship.yazi"),
    ])
    def test_names(self, basename, expected):
        assert mod.yazi_plugin_name(Path("/nix/store") / basename) == expected


class TestEmptyHomeScenario:
    def test_first_run_creates_documents_and_clones(self, fake_home, fake_git):
        ctx = mod.run_activation(base_manifest(), make_args())

        assert [(c.step, c.action) for c in ctx.changes] == [
            ("documents", "mkdir"),
            ("documents", "mkdir"),
            ("documents", "mkdir"),
            ("dotfiles-repo", "clone"),
        ]
        for name in ("bioinformatics", "hacking", "screenshots"):
            assert (fake_home / "Documents" / name).is_dir()
        assert fake_git == [["git", "clone", "https://example.invalid/dotfiles.git", str(mod.DOTFILES_DIR)]]

    def test_second_run_performs_no_changes(self, fake_home, fake_git):
        mod.run_activation(base_manifest(), make_args())
        fake_git.clear()

        ctx = mod.run_activation(base_manifest(), make_args())
        assert ctx.changes == []
        assert fake_git == []

    def test_existing_checkout_not_cloned(self, fake_home, fake_git):
        mod.DOTFILES_DIR.mkdir(parents=True)
        ctx = mod.run_activation(base_manifest(), make_args())
        assert "clone" not in [c.action for c in ctx.changes]
        assert fake_git == []

    def test_dry_run_mutates_nothing(self, fake_home, fake_git):
        ctx = mod.run_activation(base_manifest(), make_args(dry_run=True))

        assert len(ctx.changes) == 4
        assert not (fake_home / "Documents").exists()
        assert fake_git == []

    def test_reloads_manifest_from_fresh_clone(self, fake_home, monkeypatch):
        def clone_with_manifest(argv, cwd=None):
            seed_manifest(fake_home, activation={"documents": ["from-clone"], "deploy": False})
            return 0

        monkeypatch.setattr(mod, "run_command", clone_with_manifest)
        ctx = mod.run_activation(base_manifest(), make_args())
        assert ctx.manifest["activation"]["documents"] == ["from-clone"]


class TestFailFast:
    def test_clone_failure_stops_later_steps(self, fake_home, monkeypatch):
        monkeypatch.setattr(mod, "run_command", lambda argv, cwd=None: 128)
        plugin = make_store_path(mod.STORE_DIR, "abc-sudo.yazi-1")
        manifest = base_manifest()
        manifest["plugins"]["yazi"] = [str(plugin)]

        with pytest.raises(mod.ActivationError, match="exited with status 128"):
            mod.run_activation(manifest, make_args())

        assert (fake_home / "Documents" / "hacking").is_dir()
        assert not mod.PLUGIN_DIRS["yazi"]["dir"].exists()

    def test_missing_repo_setting(self, fake_home, fake_git):
        with pytest.raises(mod.ActivationError, match="no dotfiles_repo"):
            mod.run_activation(base_manifest(dotfiles_repo=""), make_args())

    def test_filesystem_error_wrapped(self, fake_home, fake_git):
        documents = fake_home / "Documents"
        documents.mkdir()
        (documents / "hacking").write_text("not a directory")

        with pytest.raises(mod.ActivationError, match="step 'documents' failed"):
            mod.run_activation(base_manifest(), make_args())

    def test_cmd_activate_reports_error(self, fake_home, monkeypatch, capsys):
        seed_manifest(fake_home, activation={"documents": [], "deploy": True})
        monkeypatch.setattr(mod, "run_command", lambda argv, cwd=None: 1)
        assert mod.cmd_activate(make_args(), {"steps": []}) == 1
        assert "Error:" in capsys.readouterr().out


class TestStepSelection:
    def test_only_named_steps(self, fake_home, fake_git):
        ctx = mod.run_activation(base_manifest(), make_args(), only=["documents"])
        assert {c.step for c in ctx.changes} == {"documents"}
        assert fake_git == []

    def test_unknown_step(self, fake_home):
        with pytest.raises(mod.ActivationError, match="unknown step"):
            mod.run_activation(base_manifest(), make_args(), only=["nope"])

    def test_deploy_runs_dotter_in_checkout(self, fake_home, fake_git):
        mod.DOTFILES_DIR.mkdir(parents=True)
        ctx = mod.run_activation(base_manifest(deploy=True), make_args(), only=["deploy"])

        assert fake_git == [["dotter", "deploy", "-f", "-y", "-v"]]
        assert ctx.commands == [["dotter", "deploy", "-f", "-y", "-v"]]
        assert ctx.changes == []


class TestYaziPlugins:
    def manifest(self, *store_paths):
        manifest = base_manifest()
        manifest["plugins"]["yazi"] = [str(p) for p in store_paths]
        return manifest

    def run(self, manifest, **kwargs):
        return mod.run_activation(manifest, make_args(**kwargs), only=["yazi-plugins"])

    def test_links_plugins(self, fake_home):
        sudo = make_store_path(mod.STORE_DIR, "abc-sudo.yazi-0-unstable")
        plugins = mod.PLUGIN_DIRS["yazi"]["dir"]

        self.run(self.manifest(sudo))

        link = plugins / "sudo.yazi"
        assert link.is_symlink()
        assert Path(os.readlink(link)) == sudo

    def test_idempotent(self, fake_home):
        sudo = make_store_path(mod.STORE_DIR, "abc-sudo.yazi-1")
        self.run(self.manifest(sudo))
        assert self.run(self.manifest(sudo)).changes == []

    def test_removes_stale_store_links(self, fake_home):
        sudo = make_store_path(mod.STORE_DIR, "abc-sudo.yazi-1")
        plugins = mod.PLUGIN_DIRS["yazi"]["dir"]
        plugins.mkdir(parents=True)
        (plugins / "old.yazi").symlink_to(mod.STORE_DIR / "def-old.yazi-1")

        self.run(self.manifest(sudo))

        assert not (plugins / "old.yazi").is_symlink()
        assert (plugins / "sudo.yazi").is_symlink()

    def test_updates_link_to_new_store_path(self, fake_home):
        old = make_store_path(mod.STORE_DIR, "abc-sudo.yazi-1")
        new = make_store_path(mod.STORE_DIR, "xyz-sudo.yazi-2")
        self.run(self.manifest(old))

        ctx = self.run(self.manifest(new))

        assert [c.action for c in ctx.changes] == ["unlink", "link"]
        assert Path(os.readlink(mod.PLUGIN_DIRS["yazi"]["dir"] / "sudo.yazi")) == new

    def test_foreign_symlinks_preserved(self, fake_home):
        sudo = make_store_path(mod.STORE_DIR, "abc-sudo.yazi-1")
        plugins = mod.PLUGIN_DIRS["yazi"]["dir"]
        plugins.mkdir(parents=True)
        mine = fake_home / "my-plugin.yazi"
        mine.mkdir()
        (plugins / "custom.yazi").symlink_to(mine)
        (plugins / "sudo.yazi").symlink_to(mine)

        ctx = self.run(self.manifest(sudo))

        assert ctx.changes == []
        assert Path(os.readlink(plugins / "custom.yazi")) == mine
        assert Path(os.readlink(plugins / "sudo.yazi")) == mine

    def test_regular_directory_preserved(self, fake_home, capsys):
        sudo = make_store_path(mod.STORE_DIR, "abc-sudo.yazi-1")
        plugins = mod.PLUGIN_DIRS["yazi"]["dir"]
        (plugins / "sudo.yazi").mkdir(parents=True)

        self.run(self.manifest(sudo))

        assert not (plugins / "sudo.yazi").is_symlink()
        assert "preserving" in capsys.readouterr().out

    def test_relative_store_link_recognised(self, fake_home):
        sudo = make_store_path(mod.STORE_DIR, "abc-sudo.yazi-1")
        plugins = mod.PLUGIN_DIRS["yazi"]["dir"]
        plugins.mkdir(parents=True)
        stale = plugins / "old.yazi"
        stale.symlink_to(os.path.relpath(mod.STORE_DIR / "def-old.yazi-1", plugins))

        self.run(self.manifest(sudo))
        assert not stale.is_symlink()

    def test_dry_run_reports_replacement(self, fake_home):
        old = make_store_path(mod.STORE_DIR, "abc-sudo.yazi-1")
        new = make_store_path(mod.STORE_DIR, "xyz-sudo.yazi-2")
        self.run(self.manifest(old))

        ctx = self.run(self.manifest(new), dry_run=True)

        assert [c.action for c in ctx.changes] == ["unlink", "link"]
        assert Path(os.readlink(mod.PLUGIN_DIRS["yazi"]["dir"] / "sudo.yazi")) == old

    def test_resolves_references_with_nix(self, fake_home, monkeypatch):
        sudo = make_store_path(mod.STORE_DIR, "abc-sudo.yazi-1")
        calls = []

        def fake_capture(argv, cwd=None):
            calls.append(argv)
            return 0, f"{sudo}\n"

        monkeypatch.setattr(mod, "capture_command", fake_capture)
        manifest = base_manifest()
        manifest["inputs"] = {"nixpkgs": "github:NixOS/nixpkgs/nixpkgs-unstable"}
        manifest["plugins"]["yazi"] = ["yaziPlugins.sudo", "# yaziPlugins.git"]

        self.run(manifest)

        assert calls == [[
            "nix", "build", "--no-link", "--print-out-paths",
            "github:NixOS/nixpkgs/nixpkgs-unstable#yaziPlugins.sudo",
        ]]
        assert (mod.PLUGIN_DIRS["yazi"]["dir"] / "sudo.yazi").is_symlink()

    def test_build_failure_raises(self, fake_home, monkeypatch):
        monkeypatch.setattr(mod, "capture_command", lambda argv, cwd=None: (1, ""))
        manifest = base_manifest()
        manifest["plugins"]["yazi"] = ["yaziPlugins.sudo"]

        with pytest.raises(mod.ActivationError, match="could not build"):
            self.run(manifest)


class TestNushellPlugins:
    def test_links_plugin_binaries_only(self, fake_home):
        polars = make_store_path(
            mod.STORE_DIR, "abc-nushell_plugin_polars-0.101",
            ["bin/nu_plugin_polars", "bin/helper", "share/doc/README"],
        )
        manifest = base_manifest()
        manifest["plugins"]["nushell"] = [str(polars)]

        mod.run_activation(manifest, make_args(), only=["nushell-plugins"])

        target = mod.PLUGIN_DIRS["nushell"]["dir"]
        assert sorted(p.name for p in target.iterdir()) == ["nu_plugin_polars"]
        assert Path(os.readlink(target / "nu_plugin_polars")) == polars / "bin" / "nu_plugin_polars"

    def test_removed_plugin_unlinked(self, fake_home):
        polars = make_store_path(mod.STORE_DIR, "abc-polars", ["bin/nu_plugin_polars"])
        query = make_store_path(mod.STORE_DIR, "abc-query", ["bin/nu_plugin_query"])
        manifest = base_manifest()
        manifest["plugins"]["nushell"] = [str(polars), str(query)]
        mod.run_activation(manifest, make_args(), only=["nushell-plugins"])

        manifest["plugins"]["nushell"] = [str(polars)]
        mod.run_activation(manifest, make_args(), only=["nushell-plugins"])

        target = mod.PLUGIN_DIRS["nushell"]["dir"]
        assert sorted(p.name for p in target.iterdir()) == ["nu_plugin_polars"]


class TestSkills:
    def test_links_each_skill_and_keeps_foreign(self, fake_home):
        source = fake_home / "skills-src"
        for name in ("docx", "pdf"):
            (source / name).mkdir(parents=True)
        (source / "README.md").write_text("")
        target = fake_home / ".claude" / "skills"
        (target / "my-own-skill").mkdir(parents=True)

        manifest = base_manifest(skills_source=str(source), skills_target=str(target))
        mod.run_activation(manifest, make_args(), only=["skills"])

        assert sorted(p.name for p in target.iterdir()) == ["docx", "my-own-skill", "pdf"]
        assert Path(os.readlink(target / "pdf")) == source / "pdf"
        assert not (target / "my-own-skill").is_symlink()

    def test_dropped_skill_unlinked(self, fake_home):
        source = fake_home / "skills-src"
        (source / "docx").mkdir(parents=True)
        (source / "pdf").mkdir()
        manifest = base_manifest(skills_source=str(source), skills_target="~/.claude/skills")
        mod.run_activation(manifest, make_args(), only=["skills"])

        (source / "pdf").rmdir()
        mod.run_activation(manifest, make_args(), only=["skills"])

        assert sorted(p.name for p in mod.SKILLS_TARGET.iterdir()) == ["docx"]

    def test_missing_source_skipped(self, fake_home):
        manifest = base_manifest(skills_source=str(fake_home / "nope"))
        ctx = mod.run_activation(manifest, make_args(), only=["skills"])
        assert ctx.changes == []
