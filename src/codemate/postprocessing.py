"""Pure text transforms applied to finished model responses.

Neither function here raises. A rule that cannot run (disabled, unknown kind,
or a stored pattern that no longer compiles) leaves the text untouched, so one
broken rule never takes the rest of the profile down with it.
"""

import logging
import re
from typing import Mapping, Optional

from .models import AddPrefixRule, AddSuffixRule, PatternReplaceRule, Profile, Rule

logger = logging.getLogger(__name__)


def apply_rule(rule: Rule, text: str) -> str:
    """Applies a single rule to ``text`` and returns the result.

    Parameters
    ----------
    rule : Rule
        Any rule variant. Disabled rules and unknown kinds are no-ops.
    text : str
        The input text.

    Returns
    -------
    str
        The transformed text, or ``text`` itself when the rule does not apply.
    """
    if not rule.enabled:
        return text

    if isinstance(rule, PatternReplaceRule):
        if not rule.pattern:
            return text
        try:
            return re.sub(rule.pattern, rule.replacement or "", text)
        except (re.error, IndexError) as e:
            # Validation rejects these up front, so this is a corrupted record.
            logger.warning("Skipping rule %r: invalid pattern %r (%s)", rule.name, rule.pattern, e)
            return text

    if isinstance(rule, AddPrefixRule):
        return rule.prefix + text if rule.prefix else text

    if isinstance(rule, AddSuffixRule):
        return text + rule.suffix if rule.suffix else text

    return text


def run_profile(
    profile: Optional[Profile], registry: Mapping[str, Rule], text: str
) -> str:
    """Folds ``apply_rule`` over the profile's rule ids, in order.

    Ids with no entry in ``registry`` are skipped. A missing profile, an empty
    id list, or a list where nothing resolves returns ``text`` unchanged.
    """
    if profile is None:
        return text

    result = text
    for rule_id in profile.rule_ids:
        rule = registry.get(rule_id)
        if rule is not None:
            result = apply_rule(rule, result)
    return result
