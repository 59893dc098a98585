"""Tests for dotfiles repository validation."""

import json
import sys

import pytest

from tests.conftest import make_args

mod = sys.modules["dotctl"]

GLOBAL_TOML = """\
[default.files]
".zshrc" = "~/.zshrc"
".config/helix" = { target = "~/.config/helix", type = "symbolic" }
"missing.conf" = "~/.missing"

[default.variables]
editor = "hx"
"""


@pytest.fixture
def repo(fake_home):
    root = mod.DOTFILES_DIR
    (root / ".dotter").mkdir(parents=True)
    return root


def fake_git_index(monkeypatch, tracked, ignored=()):
    monkeypatch.setattr(mod, "git_tracked_files", lambda root: list(tracked))
    monkeypatch.setattr(mod, "git_is_tracked", lambda root, path: path in tracked)
    monkeypatch.setattr(mod, "git_is_ignored", lambda root, path: path in ignored)


class TestDotterFiles:
    def test_parses_plain_and_table_targets(self, repo):
        (repo / ".dotter" / "global.toml").write_text(GLOBAL_TOML)
        entries = mod.dotter_files(repo / ".dotter" / "global.toml")
        assert entries == [
            (".zshrc", "~/.zshrc", "default"),
            (".config/helix", "~/.config/helix", "default"),
            ("missing.conf", "~/.missing", "default"),
        ]

    def test_missing_or_invalid(self, repo):
        assert mod.dotter_files(repo / ".dotter" / "macos.toml") == []
        (repo / ".dotter" / "macos.toml").write_text("[broken")
        assert mod.dotter_files(repo / ".dotter" / "macos.toml") == []


class TestRules:
    def test_global_toml_required(self, repo):
        result = mod.rule_dotter_configs_exist(repo, make_args())
        assert not result.passed
        assert result.issues[0].severity == "error"

        (repo / ".dotter" / "global.toml").write_text("")
        assert mod.rule_dotter_configs_exist(repo, make_args()).passed

    def test_files_tracked(self, repo, monkeypatch):
        (repo / ".dotter" / "global.toml").write_text(GLOBAL_TOML)
        (repo / ".zshrc").write_text("")
        (repo / ".config" / "helix").mkdir(parents=True)
        fake_git_index(monkeypatch, tracked=[".zshrc"])

        result = mod.rule_dotter_files_tracked(repo, make_args())

        assert not result.passed
        by_file = {i.file: i for i in result.issues}
        assert by_file["missing.conf"].severity == "error"
        assert by_file[".config/helix"].severity == "warning"
        assert by_file[".config/helix"].fix_suggestion == "Run: git add .config/helix"
        assert ".zshrc" not in by_file

    def test_ignored_file_is_error(self, repo, monkeypatch):
        (repo / ".dotter" / "global.toml").write_text('[default.files]\n"secret.conf" = "~/.secret"\n')
        (repo / "secret.conf").write_text("")
        fake_git_index(monkeypatch, tracked=[], ignored=["secret.conf"])

        result = mod.rule_dotter_files_tracked(repo, make_args())
        assert not result.passed
        assert result.issues[0].fix_suggestion == "Add to .gitignore: !secret.conf"

    def test_only_warnings_passes(self, repo, monkeypatch):
        (repo / ".dotter" / "global.toml").write_text('[default.files]\n".zshrc" = "~/.zshrc"\n')
        (repo / ".zshrc").write_text("")
        fake_git_index(monkeypatch, tracked=[])

        result = mod.rule_dotter_files_tracked(repo, make_args())
        assert result.passed
        assert [i.severity for i in result.issues] == ["warning"]

    def test_broken_symlinks(self, repo, monkeypatch):
        (repo / "dangling").symlink_to(repo / "gone")
        (repo / "fine").symlink_to(repo / ".dotter")
        fake_git_index(monkeypatch, tracked=["dangling", "fine"])

        result = mod.rule_no_broken_symlinks(repo, make_args())
        assert [i.file for i in result.issues] == ["dangling"]

    def test_toml_files(self, repo, monkeypatch):
        (repo / "good.toml").write_text('a = 1\n')
        (repo / "bad.toml").write_text("a = \n")
        fake_git_index(monkeypatch, tracked=["good.toml", "bad.toml", "notes.md"])

        result = mod.rule_toml_files_valid(repo, make_args())
        assert result.rule_name == "All 2 TOML files are valid"
        assert [i.file for i in result.issues] == ["bad.toml"]

    def test_json_files(self, repo, monkeypatch):
        (repo / "good.json").write_text('{"a": 1}')
        (repo / "commented.json").write_text(
            '{\n  // editor settings\n  "url": "https://example.com",\n  "b": [1, 2,],\n}\n'
        )
        (repo / "bad.json").write_text('{"a": ')
        (repo / "odd.jsonc").write_text("{ nope }")
        fake_git_index(monkeypatch, tracked=["good.json", "commented.json", "bad.json", "odd.jsonc"])

        result = mod.rule_json_files_valid(repo, make_args())
        assert [i.file for i in result.issues] == ["bad.json"]


class TestStripJsonComments:
    def test_line_and_block_comments(self):
        text = '{\n  // line\n  "a": 1, /* block\n comment */ "b": 2\n}'
        assert json.loads(mod.strip_json_comments(text)) == {"a": 1, "b": 2}

    def test_slashes_in_strings_kept(self):
        text = '{"url": "https://example.com/a//b", "q": "say \\"//hi\\""}'
        assert json.loads(mod.strip_json_comments(text)) == {
            "url": "https://example.com/a//b",
            "q": 'say "//hi"',
        }

    def test_trailing_commas(self):
        assert json.loads(mod.strip_json_comments('{"a": [1, 2, ], }')) == {"a": [1, 2]}


class TestSummarize:
    def test_errors_exit_1_with_fix_suggestions(self, capsys):
        results = [mod.RuleResult("r", False, [
            mod.Issue("error", "ignored", "a.conf", "Add to .gitignore: !a.conf"),
            mod.Issue("warning", "untracked", "b.conf", "Run: git add b.conf"),
            mod.Issue("warning", "untracked", "c.conf", "Run: git add c.conf"),
        ])]
        assert mod.summarize_validation(results, fix=True) == 1

        out = capsys.readouterr().out
        assert "3 issue(s) found (1 errors, 2 warnings)" in out
        assert "!a.conf" in out
        assert "git add b.conf c.conf" in out

    def test_warnings_only_exit_0(self, capsys):
        results = [mod.RuleResult("r", True, [mod.Issue("warning", "untracked", "b.conf")])]
        assert mod.summarize_validation(results, fix=False) == 0
        assert "1 warning(s)" in capsys.readouterr().out

    def test_clean(self, capsys):
        assert mod.summarize_validation([mod.RuleResult("r", True)], fix=False) == 0
        assert "All validations passed!" in capsys.readouterr().out


class TestValidateRecipes:
    def test_validate_clean_repo(self, repo, monkeypatch, capsys):
        (repo / ".dotter" / "global.toml").write_text('[default.files]\n".zshrc" = "~/.zshrc"\n')
        (repo / ".zshrc").write_text("")
        fake_git_index(monkeypatch, tracked=[".dotter/global.toml", ".zshrc"])

        assert mod.run_recipe("validate", [], make_args()) == 0
        assert "All 1 TOML files are valid" in capsys.readouterr().out

    def test_validate_fix_alias(self, repo, monkeypatch, capsys):
        (repo / ".dotter" / "global.toml").write_text(GLOBAL_TOML)
        fake_git_index(monkeypatch, tracked=[])

        assert mod.run_recipe("vf", [], make_args()) == 1
        assert "Fix suggestions:" in capsys.readouterr().out

    def test_validate_verbose(self, repo, monkeypatch, capsys):
        (repo / ".dotter" / "global.toml").write_text(GLOBAL_TOML)
        fake_git_index(monkeypatch, tracked=[])

        mod.run_recipe("validate-verbose", [], make_args())
        assert "Found 3 files referenced in dotter configs" in capsys.readouterr().out
