"""Validation and write-through storage for post-processing rules and profiles."""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import NotFoundError, ValidationError
from .models import (
    ADD_PREFIX,
    ADD_SUFFIX,
    PATTERN_REPLACE,
    RULE_KINDS,
    Profile,
    Rule,
    RuleBase,
)
from .postprocessing import run_profile
from .settings import Settings

logger = logging.getLogger(__name__)
api_logger = logging.getLogger("codemate.api")

RULES_KEY = "post_processors.rules"
PROFILES_KEY = "post_processors.profiles"
ACTIVE_PROFILE_KEY = "post_processors.active_profile_id"

_rule_adapter = TypeAdapter(Rule)
_COMMON_RULE_FIELDS = frozenset(RuleBase.model_fields)
_SERVER_FIELDS = ("id", "created_at", "updated_at")


def _describe(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]


def validate_rule(data: Mapping[str, Any]) -> Rule:
    """Checks a rule's required-field invariant and returns the parsed rule.

    Raises
    ------
    ValidationError
        When the name is blank, the kind is missing or unsupported, the field
        required by the kind is absent, or a pattern does not compile.
    """
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Name is required")

    kind = data.get("kind")
    if not kind:
        raise ValidationError("Kind is required")
    if kind not in RULE_KINDS:
        raise ValidationError(f"Unsupported rule kind: {kind!r}")

    if kind == PATTERN_REPLACE:
        pattern = data.get("pattern")
        if not isinstance(pattern, str) or not pattern.strip():
            raise ValidationError("Pattern is required for pattern-replace")
        try:
            re.compile(pattern)
        except re.error as e:
            raise ValidationError(f"Invalid regex pattern: {e}") from e
    elif kind == ADD_PREFIX and data.get("prefix") is None:
        raise ValidationError("Prefix is required for add-prefix")
    elif kind == ADD_SUFFIX and data.get("suffix") is None:
        raise ValidationError("Suffix is required for add-suffix")

    try:
        return _rule_adapter.validate_python(dict(data))
    except PydanticValidationError as e:
        raise ValidationError(_describe(e)) from e


def validate_profile(data: Mapping[str, Any]) -> Profile:
    """Checks a profile's name and rule list. Rule ids are not resolved here."""
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Profile name is required")
    if not isinstance(data.get("rule_ids"), (list, tuple)):
        raise ValidationError("Rule list is invalid")

    try:
        return Profile.model_validate(dict(data))
    except PydanticValidationError as e:
        raise ValidationError(_describe(e)) from e


class RuleStore:
    """Owns the canonical rules, profiles and active-profile pointer.

    Every mutator validates first, builds the new state on copies, writes the
    full snapshot to ``settings`` and only then swaps the copies in. A failed
    write therefore leaves the in-memory state exactly as it was.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._rules: Dict[str, Rule] = {}
        self._profiles: Dict[str, Profile] = {}
        self._active_profile_id: Optional[str] = None
        self.reload()

    # --- Loading / flushing ---
    def reload(self) -> None:
        """Discards in-memory state and re-reads it from the settings store."""
        data = self.settings.read()

        rules: Dict[str, Rule] = {}
        for raw in data.get(RULES_KEY) or []:
            try:
                rule = _rule_adapter.validate_python(raw)
            except PydanticValidationError as e:
                logger.warning("Skipping malformed rule record: %s", _describe(e))
                continue
            rules[rule.id] = rule

        profiles: Dict[str, Profile] = {}
        for raw in data.get(PROFILES_KEY) or []:
            try:
                profile = Profile.model_validate(raw)
            except PydanticValidationError as e:
                logger.warning("Skipping malformed profile record: %s", _describe(e))
                continue
            profiles[profile.id] = profile

        self._rules = rules
        self._profiles = profiles
        self._active_profile_id = data.get(ACTIVE_PROFILE_KEY)
        logger.debug("Loaded %d rules and %d profiles", len(rules), len(profiles))

    def _commit(
        self,
        rules: Dict[str, Rule],
        profiles: Dict[str, Profile],
        active_profile_id: Optional[str],
    ) -> None:
        self.settings.update(
            {
                RULES_KEY: [r.model_dump(mode="json") for r in rules.values()],
                PROFILES_KEY: [p.model_dump(mode="json") for p in profiles.values()],
                ACTIVE_PROFILE_KEY: active_profile_id,
            }
        )
        self._rules = rules
        self._profiles = profiles
        self._active_profile_id = active_profile_id

    # --- Rules ---
    def create_rule(self, data: Mapping[str, Any]) -> Rule:
        fields = {k: v for k, v in data.items() if k not in _SERVER_FIELDS}
        rule = validate_rule(fields)

        rules = dict(self._rules)
        rules[rule.id] = rule
        self._commit(rules, self._profiles, self._active_profile_id)
        logger.info("Created rule %r (%s)", rule.name, rule.id)
        return rule

    def update_rule(self, rule_id: str, changes: Mapping[str, Any]) -> Rule:
        current = self._require_rule(rule_id)
        base = current.model_dump()
        if changes.get("kind", current.kind) != current.kind:
            # The old kind's fields do not belong to the new variant.
            base = {k: v for k, v in base.items() if k in _COMMON_RULE_FIELDS}

        merged = {
            **base,
            **changes,
            "id": current.id,
            "created_at": current.created_at,
            "updated_at": datetime.now(timezone.utc),
        }
        rule = validate_rule(merged)

        rules = dict(self._rules)
        rules[rule_id] = rule
        self._commit(rules, self._profiles, self._active_profile_id)
        logger.info("Updated rule %r (%s)", rule.name, rule.id)
        return rule

    def delete_rule(self, rule_id: str) -> None:
        """Deletes a rule and removes every reference to it from the profiles."""
        self._require_rule(rule_id)

        rules = {k: v for k, v in self._rules.items() if k != rule_id}
        profiles = {}
        for pid, profile in self._profiles.items():
            if rule_id in profile.rule_ids:
                profile = profile.model_copy(
                    update={"rule_ids": [r for r in profile.rule_ids if r != rule_id]}
                )
            profiles[pid] = profile

        self._commit(rules, profiles, self._active_profile_id)
        logger.info("Deleted rule %s", rule_id)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self._rules.get(rule_id)

    def list_rules(self) -> List[Rule]:
        return list(self._rules.values())

    @property
    def registry(self) -> Dict[str, Rule]:
        """Id-to-rule mapping used when executing profiles."""
        return dict(self._rules)

    # --- Profiles ---
    def create_profile(self, data: Mapping[str, Any]) -> Profile:
        fields = {k: v for k, v in data.items() if k not in _SERVER_FIELDS}
        profile = validate_profile(fields)

        profiles = dict(self._profiles)
        profiles[profile.id] = profile
        self._commit(self._rules, profiles, self._active_profile_id)
        logger.info("Created profile %r (%s)", profile.name, profile.id)
        return profile

    def update_profile(self, profile_id: str, changes: Mapping[str, Any]) -> Profile:
        current = self._require_profile(profile_id)
        merged = {
            **current.model_dump(),
            **changes,
            "id": current.id,
            "created_at": current.created_at,
            "updated_at": datetime.now(timezone.utc),
        }
        profile = validate_profile(merged)

        profiles = dict(self._profiles)
        profiles[profile_id] = profile
        self._commit(self._rules, profiles, self._active_profile_id)
        logger.info("Updated profile %r (%s)", profile.name, profile.id)
        return profile

    def delete_profile(self, profile_id: str) -> None:
        """Deletes a profile, clearing the active pointer if it pointed here."""
        self._require_profile(profile_id)

        profiles = {k: v for k, v in self._profiles.items() if k != profile_id}
        active = None if self._active_profile_id == profile_id else self._active_profile_id
        self._commit(self._rules, profiles, active)
        logger.info("Deleted profile %s", profile_id)

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        return self._profiles.get(profile_id)

    def list_profiles(self) -> List[Profile]:
        return list(self._profiles.values())

    # --- Active profile ---
    def set_active_profile(self, profile_id: Optional[str]) -> None:
        if profile_id is not None:
            self._require_profile(profile_id)
        self._commit(self._rules, self._profiles, profile_id)
        logger.info("Active profile set to %s", profile_id)

    def get_active_profile(self) -> Optional[Profile]:
        if self._active_profile_id is None:
            return None
        return self._profiles.get(self._active_profile_id)

    def process(self, text: str) -> str:
        """Runs the active profile over ``text``; no active profile is a no-op."""
        profile = self.get_active_profile()
        if profile is None:
            return text

        processed = run_profile(profile, self._rules, text)
        if processed != text:
            api_logger.debug("[POST-PROCESSING] Applied profile: %s", profile.name)
            api_logger.debug("Original response preview:\n%s...", text[:200])
            api_logger.debug("Processed response preview:\n%s...", processed[:200])
        else:
            api_logger.debug(
                "[POST-PROCESSING] Applied but no rule activated. Profile: %s", profile.name
            )
        return processed

    # --- Helpers ---
    def _require_rule(self, rule_id: str) -> Rule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule not found: {rule_id}")
        return rule

    def _require_profile(self, profile_id: str) -> Profile:
        profile = self._profiles.get(profile_id)
        if profile is None:
            raise NotFoundError(f"Profile not found: {profile_id}")
        return profile
