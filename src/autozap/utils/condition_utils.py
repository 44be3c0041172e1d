"""
Evaluator for the small expression language of condition nodes.

Supported clauses, tested against the contact's last reply (case-insensitive):
    includes('x')  resposta.includes('x')
    resposta.startsWith('x')  resposta.endsWith('x')
    resposta == 'x'  resposta != 'x'  (=== and !== are accepted too)
    true  false
Clauses can be joined with && and ||, where && binds tighter.
"""
import re
from typing import List

_METHOD_CLAUSE = re.compile(
    r"^(?:resposta\s*\.\s*)?(includes|startsWith|endsWith)\s*\(\s*(['\"])(.*?)\2\s*\)$"
)
_COMPARE_CLAUSE = re.compile(r"^resposta\s*(===|==|!==|!=)\s*(['\"])(.*?)\2$")
_REVERSED_COMPARE_CLAUSE = re.compile(r"^(['\"])(.*?)\1\s*(===|==|!==|!=)\s*resposta$")


class ConditionSyntaxError(ValueError):
    pass


def _split_outside_quotes(expression: str, operator: str) -> List[str]:
    parts: List[str] = []
    current: List[str] = []
    quote = None
    index = 0
    while index < len(expression):
        char = expression[index]
        if quote:
            current.append(char)
            if char == quote:
                quote = None
            index += 1
            continue
        if char in ("'", '"'):
            quote = char
            current.append(char)
            index += 1
            continue
        if expression.startswith(operator, index):
            parts.append("".join(current))
            current = []
            index += len(operator)
            continue
        current.append(char)
        index += 1
    if quote:
        raise ConditionSyntaxError(f"Unterminated string in condition: {expression}")
    parts.append("".join(current))
    return parts


def _evaluate_clause(clause: str, response: str) -> bool:
    clause = clause.strip()
    if clause == "true":
        return True
    if clause == "false":
        return False

    match = _METHOD_CLAUSE.match(clause)
    if match:
        method, value = match.group(1), match.group(3).lower()
        if method == "includes":
            return value in response
        if method == "startsWith":
            return response.startswith(value)
        return response.endswith(value)

    match = _COMPARE_CLAUSE.match(clause)
    if match:
        operator, value = match.group(1), match.group(3).lower()
        return (response == value) if operator in ("==", "===") else (response != value)

    match = _REVERSED_COMPARE_CLAUSE.match(clause)
    if match:
        value, operator = match.group(2).lower(), match.group(3)
        return (response == value) if operator in ("==", "===") else (response != value)

    raise ConditionSyntaxError(f"Unsupported condition clause: {clause or '<empty>'}")


def evaluate_condition(expression: str, response: str) -> bool:
    """
    Evaluate a condition expression against a reply.

    Raises:
        ConditionSyntaxError: when the expression is empty or uses unsupported syntax
    """
    if not expression or not expression.strip():
        raise ConditionSyntaxError("Empty condition")
    response = (response or "").strip().lower()
    return any(
        all(_evaluate_clause(clause, response) for clause in _split_outside_quotes(disjunct, "&&"))
        for disjunct in _split_outside_quotes(expression.strip(), "||")
    )
