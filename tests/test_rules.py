"""Tests for the built-in pattern rules."""

from __future__ import annotations

import re

from lodestar.repository.issues import Issue
from lodestar.repository.rules import RULES, TOOL_NAME, PatternRule, rules_for, scan_text


def _ids(issues: list[Issue]) -> list[str]:
    return [i.rule_id for i in issues]


class TestHardcodedCredentials:
    def test_password_literal_is_one_high_security_issue(self):
        text = "import os\n\nconst password = \"hunter2\";\nconsole.info('ready');\n"
        issues = scan_text("src/config.js", text)
        assert len(issues) == 1
        issue = issues[0]
        assert issue.file == "src/config.js"
        assert issue.line == 3
        assert issue.severity == "high"
        assert issue.category == "security"
        assert issue.tool == TOOL_NAME
        assert issue.code_snippet == 'const password = "hunter2";'

    def test_api_key_in_python(self):
        issues = scan_text("settings.py", "API_KEY = 'abc123'\n")
        assert _ids(issues) == ["SEC002"]

    def test_password_from_environment_is_clean(self):
        assert scan_text("settings.py", "password = os.environ['PASSWORD']\n") == []


class TestCodePatterns:
    def test_eval(self):
        assert "SEC006" in _ids(scan_text("a.js", "var x = eval(input);"))

    def test_todo_is_low_security(self):
        issues = scan_text("a.py", "# TODO: remove this\n")
        assert len(issues) == 1
        assert issues[0].severity == "low"
        assert issues[0].category == "security"

    def test_todo_is_case_sensitive(self):
        assert scan_text("a.py", "# todo list widget\n") == []

    def test_shell_true(self):
        issues = scan_text("run.py", "subprocess.run(cmd, shell=True)\n")
        assert "PY003" in _ids(issues)


class TestExtensionScoping:
    def test_inner_html_only_in_js(self):
        line = "el.innerHTML = value;\n"
        assert "JS001" in _ids(scan_text("ui.ts", line))
        assert "JS001" not in _ids(scan_text("ui.py", line))

    def test_pickle_only_in_python(self):
        line = "obj = pickle.loads(data)\n"
        assert "PY001" in _ids(scan_text("load.py", line))
        assert scan_text("notes.md", line) == []

    def test_rules_for_unscoped_apply_everywhere(self):
        ids = {r.rule_id for r in rules_for("README.md")}
        assert "SEC001" in ids
        assert "JS001" not in ids
        assert "INC001" not in ids


class TestOtherCategories:
    def test_inclusivity(self):
        issues = scan_text("db.py", "replica = connect(master_host)  # master node\n")
        assert any(i.category == "inclusivity" for i in issues)

    def test_environmental_busy_wait(self):
        issues = scan_text("loop.py", "    time.sleep(0)\n")
        assert [(i.rule_id, i.category) for i in issues] == [("ENV003", "environmental")]

    def test_ethical_logging_of_sensitive_data(self):
        issues = scan_text("auth.py", "logger.info('login %s', password)\n")
        ethical = [i for i in issues if i.category == "ethical"]
        assert len(ethical) == 1
        assert ethical[0].severity == "high"


class TestScanText:
    def test_one_issue_per_line_and_rule(self):
        text = "a = eval(x)\nb = eval(y)\n"
        issues = scan_text("m.py", text)
        assert [(i.rule_id, i.line) for i in issues] == [("SEC006", 1), ("SEC006", 2)]

    def test_very_long_lines_skipped(self):
        text = "password = 'x' " + "a" * 3000
        assert scan_text("bundle.js", text) == []

    def test_custom_rule_table(self):
        rule = PatternRule("X1", re.compile("forbidden"), "medium", "ethical", "Forbidden word")
        issues = scan_text("any.txt", "nothing\nforbidden here\n", rules=[rule])
        assert len(issues) == 1
        assert issues[0].line == 2
        assert issues[0].message == "Forbidden word"

    def test_rule_ids_unique(self):
        ids = [r.rule_id for r in RULES]
        assert len(ids) == len(set(ids))
