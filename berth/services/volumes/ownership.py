"""Typed volume ownership.

Runtime volumes carry their owner in a label. The label value is parsed into
a ``VolumeOwner`` before any comparison so that malformed labels never match
a real owner.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from berth.errors import ValidationError

OWNER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@-]{0,127}$")


@dataclass(frozen=True)
class VolumeOwner:
    """Validated owner identifier."""

    id: str

    def __post_init__(self) -> None:
        if not OWNER_PATTERN.match(self.id):
            raise ValidationError(
                f"Invalid owner: {self.id!r}",
                details={"owner": self.id},
            )

    def __str__(self) -> str:
        return self.id

    @classmethod
    def coerce(cls, value: VolumeOwner | str) -> VolumeOwner:
        return value if isinstance(value, VolumeOwner) else cls(value)

    @classmethod
    def from_labels(cls, labels: dict[str, str], key: str) -> VolumeOwner | None:
        """Parse the owner label.

        Returns:
            None if the label is absent

        Raises:
            ValidationError: If the label is present but malformed
        """
        value = labels.get(key)
        if value is None:
            return None
        return cls(value)

    def labels(self, key: str) -> dict[str, str]:
        """Runtime labels marking an object as owned by this owner."""
        return {key: self.id}

    def may_adopt(self, labels: dict[str, str], key: str) -> bool:
        """Whether a runtime object with ``labels`` may be recorded for us.

        Unlabelled objects are adoptable by anyone; labelled ones only by
        their owner. Malformed labels are never adoptable.
        """
        try:
            labelled = VolumeOwner.from_labels(labels, key)
        except ValidationError:
            return False
        return labelled is None or labelled == self
