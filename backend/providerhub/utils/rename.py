"""
Model alias rename rules.

Rules are applied in order to a model name to produce its alias. A rule that
fails (for example an invalid regular expression) is skipped and the name is
restored to its value before that rule.
"""

import logging
import re
from typing import Annotated, Callable, Literal, Optional, Sequence, Union

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# JavaScript-style "$1" group references in regex replacements
_JS_GROUP_REF = re.compile(r"\$(\d+)")


class _BaseRule(BaseModel):
    id: str = ""
    enabled: bool = True


class InsertRule(_BaseRule):
    """Insert text as prefix/suffix, or before/after every occurrence of `match`."""
    type: Literal["insert"] = "insert"
    value: str
    position: Literal["prefix", "suffix", "before", "after"]
    match: Optional[str] = None


class ReplaceRule(_BaseRule):
    type: Literal["replace"] = "replace"
    from_: str = Field(alias="from")
    to: str = ""

    model_config = {"populate_by_name": True}


class RegexRule(_BaseRule):
    type: Literal["regex"] = "regex"
    pattern: str
    replace: str = ""


class CaseRule(_BaseRule):
    type: Literal["case"] = "case"
    mode: Literal["upper", "lower"]


RenameRule = Annotated[
    Union[InsertRule, ReplaceRule, RegexRule, CaseRule],
    Field(discriminator="type"),
]


def _apply_insert(name: str, rule: InsertRule) -> str:
    if rule.position == "prefix":
        return rule.value + name
    if rule.position == "suffix":
        return name + rule.value
    if not rule.match or rule.match not in name:
        return name
    if rule.position == "after":
        replacement = rule.match + rule.value
    else:
        replacement = rule.value + rule.match
    return re.sub(rule.match, lambda _: replacement, name)


def _apply_rule(name: str, rule) -> str:
    if isinstance(rule, InsertRule):
        return _apply_insert(name, rule)
    if isinstance(rule, ReplaceRule):
        if not rule.from_:
            return name
        return re.sub(rule.from_, lambda _: rule.to, name)
    if isinstance(rule, RegexRule):
        if not rule.pattern:
            return name
        return re.sub(rule.pattern, _JS_GROUP_REF.sub(r"\\g<\1>", rule.replace), name)
    if isinstance(rule, CaseRule):
        return name.upper() if rule.mode == "upper" else name.lower()
    return name


def apply_rules_to_name(
    name: str,
    rules: Sequence[RenameRule],
    on_error: Optional[Callable[[Exception, RenameRule], None]] = None,
) -> str:
    """
    Apply rename rules in order to a model name.

    Args:
        name: Original model name
        rules: Rules to apply; disabled rules are skipped
        on_error: Optional callback for rules that fail to apply

    Returns:
        The renamed string
    """
    new_name = name

    for rule in rules:
        if not rule.enabled:
            continue

        before = new_name
        try:
            new_name = _apply_rule(new_name, rule)
        except re.error as e:
            new_name = before
            if on_error:
                on_error(e, rule)
            else:
                logger.error(f"Failed to apply rename rule {rule.id or rule.type}: {e}")

    return new_name
