"""
Protected field definitions (``licensing_kernel.domain.protected_fields``).

Responsibility
--------------
Declares which attributes of a record owner may only change through the
change-request subsystem, and normalizes proposed values.  A protected
field is either a single attribute (identity fields) or a composite of
several attributes that must change together (``location`` = province +
town).

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any

from licensing_kernel.exceptions import ConfigurationError, InvalidChangeValueError


def canonical_value(value: Any) -> Any:
    """Dates are stored and compared as ISO strings."""
    if isinstance(value, date):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class ProtectedField:
    """A protected field and the owner attributes it covers."""

    name: str
    components: tuple[str, ...]

    @property
    def is_composite(self) -> bool:
        return len(self.components) > 1


@dataclass(frozen=True)
class ProtectedFieldSet:
    """The fixed protected-field configuration for one owner type.

    Contract: frozen; every attribute belongs to at most one field.
    """

    subject_type: str
    fields: tuple[ProtectedField, ...]

    def __post_init__(self) -> None:
        errors: list[str] = []
        seen: dict[str, str] = {}
        names = [f.name for f in self.fields]
        for dup in sorted({n for n in names if names.count(n) > 1}):
            errors.append(f"protected field '{dup}' declared more than once")
        for f in self.fields:
            if not f.components:
                errors.append(f"protected field '{f.name}' has no components")
            for attr in f.components:
                if attr in seen:
                    errors.append(
                        f"attribute '{attr}' belongs to both '{seen[attr]}' and '{f.name}'"
                    )
                seen[attr] = f.name
        if errors:
            raise ConfigurationError(errors)

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def get(self, name: str) -> ProtectedField | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def is_protected(self, name: str) -> bool:
        return self.get(name) is not None

    def field_for_attribute(self, attribute: str) -> ProtectedField | None:
        for f in self.fields:
            if attribute in f.components:
                return f
        return None

    def require(self, name: str) -> ProtectedField:
        field = self.get(name)
        if field is None:
            raise InvalidChangeValueError(name, "not a protected field")
        return field

    def normalize(self, name: str, value: Any) -> Any:
        """Return the canonical form of *value* for field *name*.

        Dates become ISO strings, matching how profiles store them.

        Composite values must be a mapping carrying every component and
        nothing else; they are returned as a plain dict in component order.
        """
        field = self.require(name)
        if not field.is_composite:
            if isinstance(value, Mapping):
                raise InvalidChangeValueError(name, "expected a scalar value")
            return canonical_value(value)

        if not isinstance(value, Mapping):
            raise InvalidChangeValueError(
                name, f"expected a mapping of {', '.join(field.components)}"
            )
        missing = [c for c in field.components if value.get(c) in (None, "")]
        if missing:
            raise InvalidChangeValueError(
                name, f"sub-values must change together; missing {', '.join(missing)}"
            )
        extra = sorted(set(value) - set(field.components))
        if extra:
            raise InvalidChangeValueError(name, f"unexpected keys {', '.join(extra)}")
        return {c: canonical_value(value[c]) for c in field.components}
