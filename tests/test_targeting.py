"""ConditionEvaluator / RuleEvaluator のユニットテスト"""

import pytest
from k1s0_flagengine import (
    ConditionEvaluator,
    ConditionOperator,
    EvaluationError,
    RuleEvaluator,
    TargetingCondition,
    TargetingRule,
    UserContext,
)

Op = ConditionOperator


def check(attribute: str, op: ConditionOperator, values: list[str], ctx: UserContext) -> bool:
    return ConditionEvaluator().evaluate(TargetingCondition(attribute, op, values), ctx)


def test_equals_matches_any_value() -> None:
    """equals は値リストのいずれかと一致すれば真。"""
    ctx = UserContext(country="JP")
    assert check("country", Op.EQUALS, ["US", "JP"], ctx) is True
    assert check("country", Op.EQUALS, ["US"], ctx) is False


def test_in_and_not_in() -> None:
    """in / not_in は互いに反転する。"""
    ctx = UserContext(school_id="S1")
    assert check("schoolId", Op.IN, ["S1", "S2"], ctx) is True
    assert check("schoolId", Op.NOT_IN, ["S1", "S2"], ctx) is False
    assert check("schoolId", Op.NOT_IN, ["S3"], ctx) is True


def test_camel_and_snake_attribute_names() -> None:
    """既知属性は camelCase と snake_case の両方で参照できる。"""
    ctx = UserContext(user_type="teacher")
    assert check("userType", Op.EQUALS, ["teacher"], ctx) is True
    assert check("user_type", Op.EQUALS, ["teacher"], ctx) is True


def test_string_operators() -> None:
    """contains / starts_with / ends_with の判定。"""
    ctx = UserContext(email="alice@school.example")
    assert check("email", Op.CONTAINS, ["@school"], ctx) is True
    assert check("email", Op.NOT_CONTAINS, ["@school"], ctx) is False
    assert check("email", Op.STARTS_WITH, ["alice"], ctx) is True
    assert check("email", Op.ENDS_WITH, [".example"], ctx) is True
    assert check("email", Op.ENDS_WITH, [".org"], ctx) is False


def test_missing_attribute_is_false_for_string_operators() -> None:
    """属性がない場合、肯定の文字列演算子は偽・否定演算子は真。"""
    ctx = UserContext()
    assert check("email", Op.EQUALS, ["x"], ctx) is False
    assert check("email", Op.CONTAINS, ["x"], ctx) is False
    assert check("email", Op.NOT_EQUALS, ["x"], ctx) is True


def test_numeric_comparisons() -> None:
    """数値比較は values[0] と比較する。"""
    ctx = UserContext(grade="10")
    assert check("grade", Op.GREATER_THAN, ["9"], ctx) is True
    assert check("grade", Op.LESS_THAN, ["9"], ctx) is False
    assert check("grade", Op.GREATER_EQUAL, ["10"], ctx) is True
    assert check("grade", Op.LESS_EQUAL, ["10.5"], ctx) is True


def test_numeric_comparison_with_non_number_is_false() -> None:
    """数値に変換できない場合は例外ではなく偽。"""
    ctx = UserContext(grade="senior")
    assert check("grade", Op.GREATER_THAN, ["9"], ctx) is False
    assert check("grade", Op.LESS_THAN, ["abc"], UserContext(grade="3")) is False
    assert check("grade", Op.GREATER_THAN, ["1"], UserContext()) is False


def test_regex_uses_search() -> None:
    """matches_regex は部分一致で判定する。"""
    ctx = UserContext(email="bob@district.edu")
    assert check("email", Op.MATCHES_REGEX, [r"@district\.edu$"], ctx) is True
    assert check("email", Op.MATCHES_REGEX, [r"^alice"], ctx) is False
    assert check("email", Op.MATCHES_REGEX, [r".*"], UserContext()) is False


def test_invalid_regex_raises() -> None:
    """不正な正規表現は EvaluationError。"""
    with pytest.raises(EvaluationError):
        check("email", Op.MATCHES_REGEX, ["("], UserContext(email="x"))


def test_exists_and_not_exists() -> None:
    """exists / not_exists は値の有無のみで判定する。"""
    ctx = UserContext(custom_attributes={"plan": "pro"})
    assert check("plan", Op.EXISTS, [], ctx) is True
    assert check("plan", Op.NOT_EXISTS, [], ctx) is False
    assert check("browser", Op.EXISTS, [], ctx) is False
    assert check("browser", Op.NOT_EXISTS, [], ctx) is True


def test_negate_inverts_result() -> None:
    """negate=True で結果が反転する。"""
    condition = TargetingCondition("country", Op.EQUALS, ["JP"], negate=True)
    assert ConditionEvaluator().evaluate(condition, UserContext(country="JP")) is False
    assert ConditionEvaluator().evaluate(condition, UserContext(country="US")) is True


def test_custom_attributes_do_not_shadow_well_known_fields() -> None:
    """既知フィールドに値があればカスタム属性より優先する。"""
    ctx = UserContext(country="JP", custom_attributes={"country": "US"})
    assert check("country", Op.EQUALS, ["JP"], ctx) is True
    assert check("country", Op.EQUALS, ["US"], UserContext(custom_attributes={"country": "US"}))


def test_boolean_and_number_custom_attributes_as_strings() -> None:
    """真偽値・数値のカスタム属性は文字列化して比較する。"""
    ctx = UserContext(custom_attributes={"beta": True, "seats": 30.0})
    assert check("beta", Op.EQUALS, ["true"], ctx) is True
    assert check("seats", Op.EQUALS, ["30"], ctx) is True


def test_rule_requires_all_conditions() -> None:
    """ルールは全条件を満たした場合のみ一致する。"""
    rule = TargetingRule(
        id="r1",
        variation="true",
        conditions=[
            TargetingCondition("country", Op.EQUALS, ["JP"]),
            TargetingCondition("userType", Op.IN, ["teacher"]),
        ],
    )
    evaluator = RuleEvaluator()
    assert evaluator.evaluate(rule, UserContext(country="JP", user_type="teacher")) is True
    assert evaluator.evaluate(rule, UserContext(country="JP", user_type="student")) is False


def test_rule_without_conditions_matches() -> None:
    """条件のないルールは常に一致する。"""
    assert RuleEvaluator().evaluate(TargetingRule(id="all", variation="true"), UserContext())


def test_rule_short_circuits_on_first_failure() -> None:
    """最初に失敗した条件以降は評価しない。"""
    rule = TargetingRule(
        id="r1",
        variation="true",
        conditions=[
            TargetingCondition("country", Op.EQUALS, ["JP"]),
            TargetingCondition("email", Op.MATCHES_REGEX, ["("]),
        ],
    )
    assert RuleEvaluator().evaluate(rule, UserContext(country="US", email="x")) is False
