import pytest

from sqlgate.core.gateway.sanitizer import (
    READ_ONLY_POLICY,
    READ_WRITE_POLICY,
    SanitizerPolicy,
    ToolAccess,
    check_value,
    classify,
)


def test_plain_select_is_allowed():
    verdict = classify("SELECT Id, Name FROM dbo.Users WHERE Active = 1", READ_ONLY_POLICY)

    assert verdict.allowed
    assert verdict.reasons == ()


def test_trailing_semicolon_alone_is_allowed():
    assert classify("SELECT 1;", READ_ONLY_POLICY).allowed


def test_stacked_drop_is_blocked_with_both_reasons():
    """A terminator followed by DROP reports both the terminator and the verb"""
    verdict = classify("SELECT * FROM Users; DROP TABLE Users", READ_ONLY_POLICY)

    assert verdict.blocked
    assert "statement_terminator" in verdict.reasons
    assert "forbidden_verb:DROP" in verdict.reasons


@pytest.mark.parametrize(
    "text, reason",
    [
        ("SELECT * FROM Users WHERE Id = 1 OR 1=1", "tautology"),
        ("SELECT * FROM Users WHERE Name = 'a' OR 'x'='x'", "tautology"),
        ("SELECT * FROM Users -- comment", "comment_token"),
        ("SELECT /* hidden */ 1", "comment_token"),
        ("SELECT 1; EXEC xp_cmdshell 'dir'", "dynamic_execution"),
        ("SELECT 1; EXEC xp_cmdshell 'dir'", "system_procedure"),
        ("EXECUTE sp_executesql N'SELECT 1'", "dynamic_execution"),
        ("SELECT * FROM OPENROWSET('SQLNCLI', 'x', 'SELECT 1')", "dynamic_execution"),
        ("SELECT 'unterminated", "unbalanced_quote"),
    ],
)
def test_injection_patterns_are_blocked(text, reason):
    verdict = classify(text, READ_ONLY_POLICY)

    assert verdict.blocked
    assert reason in verdict.reasons


@pytest.mark.parametrize("verb", ["DROP", "TRUNCATE", "ALTER", "CREATE", "GRANT", "REVOKE", "DENY"])
def test_ddl_and_privilege_verbs_blocked_for_every_policy(verb):
    text = f"{verb} TABLE Users"

    for policy in (READ_ONLY_POLICY, READ_WRITE_POLICY):
        verdict = classify(text, policy)
        assert verdict.blocked
        assert f"forbidden_verb:{verb}" in verdict.reasons


@pytest.mark.parametrize(
    "text",
    [
        "DELETE FROM Users WHERE Id = 5",
        "UPDATE Users SET Name = 'x' WHERE Id = 5",
        "INSERT INTO Users (Name) VALUES ('x')",
    ],
)
def test_dml_depends_on_tool_access(text):
    assert classify(text, READ_ONLY_POLICY).blocked
    assert classify(text, READ_WRITE_POLICY).allowed


def test_keywords_inside_identifiers_do_not_match():
    """UpdatedAt, drop_date and CreatedBy are identifiers, not verbs"""
    verdict = classify("SELECT UpdatedAt, drop_date, CreatedBy FROM dbo.Orders", READ_ONLY_POLICY)

    assert verdict.allowed


def test_keywords_inside_literals_fail_closed():
    verdict = classify("SELECT * FROM Notes WHERE Body = 'please drop me'", READ_ONLY_POLICY)

    assert verdict.blocked
    assert "forbidden_verb:DROP" in verdict.reasons


def test_fullwidth_terminator_is_normalised():
    verdict = classify("SELECT 1； DROP TABLE Users", READ_ONLY_POLICY)

    assert "statement_terminator" in verdict.reasons


def test_zero_width_characters_do_not_hide_verbs():
    verdict = classify("DR\u200bOP TABLE t", READ_WRITE_POLICY)

    assert "forbidden_verb:DROP" in verdict.reasons


@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
def test_empty_input_is_blocked(text):
    verdict = classify(text, READ_ONLY_POLICY)

    assert verdict.blocked
    assert verdict.reasons == ("empty",)


def test_non_text_is_blocked():
    assert classify(None, READ_ONLY_POLICY).reasons == ("not_text",)


def test_query_too_long():
    policy = SanitizerPolicy(ToolAccess.READ_ONLY, max_length=10000)
    verdict = classify("SELECT " + "x" * 10001, policy)

    assert "too_long" in verdict.reasons


def test_control_characters_are_blocked():
    assert "control_character" in classify("SELECT 1\x00", READ_ONLY_POLICY).reasons


def test_classification_is_pure():
    """Same input, same verdict, on every call"""
    text = "SELECT * FROM Users; DROP TABLE Users"

    verdicts = {classify(text, READ_ONLY_POLICY) for _ in range(5)}

    assert len(verdicts) == 1


# =========================
# Plain values
# =========================
def test_value_with_null_byte_is_rejected():
    verdict = check_value("abc\x00def")

    assert verdict.blocked
    assert "null_byte" in verdict.reasons


def test_value_over_8000_chars_is_rejected():
    assert "too_long" in check_value("a" * 8001).reasons


def test_injection_looking_value_only_warns():
    verdict = check_value("O'Brien'; --")

    assert verdict.allowed
    assert "comment_token" in verdict.warnings
    assert "statement_terminator" in verdict.warnings


def test_non_string_values_pass():
    assert check_value(42).allowed
