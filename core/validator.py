"""
core/validator.py -- Declarative request validation with per-field error maps.

Usage:
    v = Validator(payload)
    v.required("email").email().max_length(255).unique(user_store, "email")
    v.required("password").min_length(8).password_strength(GOOD)
    v.optional("phone").format(r"^\\+?[0-9 ()-]{7,20}$", message="Invalid phone number")
    if not v.validate():
        raise ValidationError("Please correct the highlighted fields", v.errors)

Each call to field()/required()/optional() returns a FieldRules builder that
owns exactly one field, so every rule attaches to the field it was chained
from. Calling field() again with the same name returns the same builder.

Evaluation (validate()):
  - Fields are evaluated in declaration order; every field is evaluated.
  - A required field that is missing gets {"required": ...} and nothing else.
  - A missing field that is not required is skipped entirely.
  - Otherwise every rule on the field runs and every failure is recorded.
    There is no short-circuit at the first failing rule.

Errors are {field: {ruleName: message}}. Rule names are the wire names the
frontend keys on: required, email, minLength, maxLength, numeric, date, in,
format, passwordStrength, characterClasses, matches, unique.

"unique" is the only rule with a collaborator: any object exposing
value_exists(column, value) -> bool (auth.store.UserStore does). It issues
one query per validate() call.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any, Protocol

from email_validator import EmailNotValidError, validate_email

# ---------------------------------------------------------------------------
# Password strength
# ---------------------------------------------------------------------------

WEAK = 0
FAIR = 1
GOOD = 2
STRONG = 3

STRENGTH_LABELS = {WEAK: "Weak", FAIR: "Fair", GOOD: "Good", STRONG: "Strong"}

PASSWORD_MIN_SCORED_LENGTH = 10
PASSWORD_SYMBOLS = "!@#$%^&*()_+-=[]{};:'\",.<>?/\\|~`"

# class name -> (test, human label)
_CHARACTER_CLASSES: dict[str, tuple[Callable[[str], bool], str]] = {
    "upper": (lambda s: any("A" <= c <= "Z" for c in s), "uppercase letter"),
    "lower": (lambda s: any("a" <= c <= "z" for c in s), "lowercase letter"),
    "digit": (lambda s: any(c.isdigit() for c in s), "number"),
    "symbol": (lambda s: any(c in PASSWORD_SYMBOLS for c in s), "special character"),
}


def password_strength(password: str) -> int:
    """Score a password from WEAK (0) to STRONG (3).

    One point each for: length >= 10, an uppercase letter, a lowercase letter,
    a digit, a symbol from PASSWORD_SYMBOLS. Score = points // 2, capped at 3.
    With five criteria the highest reachable score is GOOD.
    """
    points = 1 if len(password) >= PASSWORD_MIN_SCORED_LENGTH else 0
    points += sum(1 for test, _label in _CHARACTER_CLASSES.values() if test(password))
    return min(STRONG, points // 2)


def missing_character_classes(password: str, classes: Iterable[str] = ("upper", "lower", "digit", "symbol")) -> list[str]:
    """Return human labels for the requested classes the password lacks."""
    return [_CHARACTER_CLASSES[name][1] for name in classes if not _CHARACTER_CLASSES[name][0](password)]


def _join_labels(labels: list[str]) -> str:
    if len(labels) == 1:
        return f"one {labels[0]}"
    return ", ".join(f"one {label}" for label in labels[:-1]) + f" and one {labels[-1]}"


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class UniqueLookup(Protocol):
    def value_exists(self, column: str, value: Any) -> bool: ...


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


# A check receives (field name, value, full data) and returns an error
# message or None.
_Check = Callable[[str, Any, Mapping[str, Any]], "str | None"]


class FieldRules:
    """Rule set for one field. Every method returns self for chaining."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.is_required = False
        self.required_message: str | None = None
        self.checks: dict[str, _Check] = {}

    def required(self, message: str | None = None) -> FieldRules:
        self.is_required = True
        self.required_message = message
        return self

    def optional(self) -> FieldRules:
        self.is_required = False
        return self

    def _add(self, rule: str, check: _Check) -> FieldRules:
        # Re-declaring a rule replaces it; evaluation follows first declaration.
        self.checks[rule] = check
        return self

    def email(self, message: str | None = None) -> FieldRules:
        def check(field, value, data):
            try:
                validate_email(str(value), check_deliverability=False)
            except EmailNotValidError:
                return message or "Please enter a valid email address"
            return None

        return self._add("email", check)

    def min_length(self, length: int, message: str | None = None) -> FieldRules:
        def check(field, value, data):
            if len(str(value)) < length:
                return message or f"Must be at least {length} characters long"
            return None

        return self._add("minLength", check)

    def max_length(self, length: int, message: str | None = None) -> FieldRules:
        def check(field, value, data):
            if len(str(value)) > length:
                return message or f"Cannot exceed {length} characters"
            return None

        return self._add("maxLength", check)

    def max_bytes(self, length: int, message: str | None = None) -> FieldRules:
        """Cap the UTF-8 encoded size. Reported under maxLength, replacing any character cap."""

        def check(field, value, data):
            if len(str(value).encode("utf-8")) > length:
                return message or f"Cannot exceed {length} bytes"
            return None

        return self._add("maxLength", check)

    def numeric(self, message: str | None = None) -> FieldRules:
        def check(field, value, data):
            if isinstance(value, bool):
                return message or "Must be a numeric value"
            try:
                number = float(str(value).strip())
            except ValueError:
                return message or "Must be a numeric value"
            if not math.isfinite(number):
                return message or "Must be a numeric value"
            return None

        return self._add("numeric", check)

    def date(self, fmt: str = "%Y-%m-%d", message: str | None = None) -> FieldRules:
        """Value must parse with `fmt` and format back to exactly the same string."""

        def check(field, value, data):
            text = str(value)
            try:
                parsed = datetime.strptime(text, fmt)
            except ValueError:
                return message or f"Invalid date format. Use {fmt}"
            if parsed.strftime(fmt) != text:
                return message or f"Invalid date format. Use {fmt}"
            return None

        return self._add("date", check)

    def in_(self, allowed: Iterable[Any], message: str | None = None) -> FieldRules:
        allowed_values = list(allowed)
        allowed_text = {str(a) for a in allowed_values}

        def check(field, value, data):
            if value in allowed_values or str(value) in allowed_text:
                return None
            return message or "Invalid value for this field"

        return self._add("in", check)

    def format(self, pattern: str, message: str | None = None) -> FieldRules:
        compiled = re.compile(pattern)

        def check(field, value, data):
            if compiled.search(str(value)) is None:
                return message or "Invalid format for this field"
            return None

        return self._add("format", check)

    def password_strength(self, min_level: int = GOOD, message: str | None = None) -> FieldRules:
        def check(field, value, data):
            text = str(value)
            if password_strength(text) >= min_level:
                return None
            if message:
                return message
            hints = missing_character_classes(text)
            if len(text) < PASSWORD_MIN_SCORED_LENGTH:
                hints.insert(0, f"at least {PASSWORD_MIN_SCORED_LENGTH} characters")
            required = STRENGTH_LABELS[min(min_level, STRONG)]
            return f"Password is too weak (needs {required}). Add " + ", ".join(hints)

        return self._add("passwordStrength", check)

    def character_classes(self, *classes: str, message: str | None = None) -> FieldRules:
        """Require each named class: "upper", "lower", "digit", "symbol"."""
        unknown = set(classes) - set(_CHARACTER_CLASSES)
        if unknown:
            raise ValueError(f"Unknown character classes: {sorted(unknown)!r}")
        wanted = classes or ("upper", "lower", "digit")

        def check(field, value, data):
            missing = missing_character_classes(str(value), wanted)
            if not missing:
                return None
            return message or f"Password must contain at least {_join_labels(missing)}"

        return self._add("characterClasses", check)

    def matches(self, other_field: str, message: str | None = None) -> FieldRules:
        def check(field, value, data):
            if data.get(other_field) != value:
                return message or "Passwords do not match"
            return None

        return self._add("matches", check)

    def unique(self, store: UniqueLookup, column: str | None = None, message: str | None = None) -> FieldRules:
        lookup_column = column or self.name

        def check(field, value, data):
            if store.value_exists(lookup_column, value):
                return message or f"This {field} is already in use"
            return None

        return self._add("unique", check)


class Validator:
    """Collects FieldRules and evaluates them against one payload."""

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        self.data: dict[str, Any] = dict(data or {})
        self.fields: dict[str, FieldRules] = {}
        self.errors: dict[str, dict[str, str]] = {}

    def field(self, name: str) -> FieldRules:
        if name not in self.fields:
            self.fields[name] = FieldRules(name)
        return self.fields[name]

    def required(self, name: str, message: str | None = None) -> FieldRules:
        return self.field(name).required(message)

    def optional(self, name: str) -> FieldRules:
        return self.field(name).optional()

    def set_value(self, name: str, value: Any) -> Validator:
        self.data[name] = value
        return self

    def validate(self) -> bool:
        """Run every field's rules. Returns True when no field failed."""
        self.errors = {}
        for name, rules in self.fields.items():
            value = self.data.get(name)
            if _is_missing(value):
                if rules.is_required:
                    self._add_error(name, "required", rules.required_message or "This field is required")
                continue
            for rule, check in rules.checks.items():
                message = check(name, value, self.data)
                if message is not None:
                    self._add_error(name, rule, message)
        return self.passes()

    def passes(self) -> bool:
        return not self.errors

    def validated(self) -> dict[str, Any]:
        """Return only the declared fields that are present in the payload."""
        return {name: self.data[name] for name in self.fields if not _is_missing(self.data.get(name))}

    def _add_error(self, field: str, rule: str, message: str) -> None:
        self.errors.setdefault(field, {})[rule] = message
