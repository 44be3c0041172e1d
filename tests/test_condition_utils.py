import pytest

from autozap.utils.condition_utils import evaluate_condition, ConditionSyntaxError


@pytest.mark.parametrize("expression, response, expected", [
    ("includes('sim')", "Sim, quero", True),
    ("resposta.includes('sim')", "não", False),
    ("resposta.startsWith('quero')", "Quero comprar", True),
    ("resposta.endsWith('obrigado')", "ok, obrigado", True),
    ("resposta == 'sim'", " SIM ", True),
    ("resposta === 'sim'", "sim!", False),
    ("resposta != 'não'", "sim", True),
    ("'sim' == resposta", "sim", True),
    ("true", "qualquer", True),
    ("false", "qualquer", False),
])
def test_single_clauses(expression, response, expected):
    assert evaluate_condition(expression, response) is expected


def test_and_binds_tighter_than_or():
    expression = "includes('pizza') && includes('grande') || includes('promo')"
    assert evaluate_condition(expression, "pizza grande")
    assert evaluate_condition(expression, "tem promo?")
    assert not evaluate_condition(expression, "pizza pequena")


def test_operators_inside_quotes_are_literal():
    assert evaluate_condition("includes('a || b')", "opção a || b")
    assert not evaluate_condition("includes('a && b')", "a")


def test_empty_condition_is_rejected():
    with pytest.raises(ConditionSyntaxError):
        evaluate_condition("  ", "sim")


def test_arbitrary_code_is_rejected():
    with pytest.raises(ConditionSyntaxError):
        evaluate_condition("__import__('os').system('ls')", "sim")


def test_unterminated_string_is_rejected():
    with pytest.raises(ConditionSyntaxError):
        evaluate_condition("includes('sim)", "sim")
