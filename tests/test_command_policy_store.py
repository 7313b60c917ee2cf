from __future__ import annotations

from taskloop.shared.services.command_policy_store import CommandPolicyStore


def test_load_without_files_is_empty(tmp_path) -> None:
    prefixes = CommandPolicyStore(tmp_path).load()
    assert prefixes.allowed == []
    assert prefixes.denied == []


def test_add_and_remove_prefixes(tmp_path) -> None:
    store = CommandPolicyStore(tmp_path)
    store.add_allowed("npm test")
    store.add_allowed("npm test")
    store.add_allowed("git status")
    store.add_denied("rm -rf")

    prefixes = store.load()
    assert prefixes.allowed == ["npm test", "git status"]
    assert prefixes.denied == ["rm -rf"]

    assert store.remove_allowed("npm test") is True
    assert store.remove_allowed("npm test") is False
    assert store.load().allowed == ["git status"]


def test_comments_and_blank_lines_are_ignored(tmp_path) -> None:
    store = CommandPolicyStore(tmp_path)
    store.ensure_files()
    store.allowed_path.write_text("# safe commands\n\nls\n  pytest  \n", encoding="utf-8")
    assert store.load().allowed == ["ls", "pytest"]


def test_suggest_prefix_keeps_subcommand_for_known_tools() -> None:
    assert CommandPolicyStore.suggest_prefix("git status -s") == "git status"
    assert CommandPolicyStore.suggest_prefix("git --no-pager log -5") == "git log"
    assert CommandPolicyStore.suggest_prefix("npm run build") == "npm run"
    assert CommandPolicyStore.suggest_prefix("ls -la") == "ls"
    assert CommandPolicyStore.suggest_prefix("") == ""
    assert CommandPolicyStore.suggest_prefix("echo 'unterminated") == "echo 'unterminated"
