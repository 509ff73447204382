"""
Deterministic change keys for result records.

Two records with the same change key are the same logical item across
snapshots, even if their descriptions were later edited past the first
100 characters or their impact text changed.
"""

from typing import Any, Mapping, Union

from ..models.entities import ResultRecord
from ..models.normalize import normalize_record


DESCRIPTION_PREFIX_LENGTH = 100
KEY_SEPARATOR = "|"


class ChangeKey:
    """
    Builds change keys from (name, title, date, description prefix).

    The key is the plain concatenation rather than a hash so that keys stay
    readable in logs and notification payloads.
    """

    @staticmethod
    def generate(record: Union[ResultRecord, Mapping[str, Any]]) -> str:
        """
        Generate the change key for a record.

        Args:
            record: a ResultRecord, or a raw backend mapping which is
                normalized first

        Returns:
            ``name|title|date|description[:100]``
        """
        if not isinstance(record, ResultRecord):
            record = normalize_record(record)

        parts = [
            record.name,
            record.title,
            record.date,
            record.description[:DESCRIPTION_PREFIX_LENGTH],
        ]
        return KEY_SEPARATOR.join(parts)


def fingerprint(record: Union[ResultRecord, Mapping[str, Any]]) -> str:
    """Shorthand for ChangeKey.generate"""
    return ChangeKey.generate(record)
