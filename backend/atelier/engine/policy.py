# backend/atelier/engine/policy.py
from dataclasses import dataclass
from datetime import timedelta

from ..core.config import Settings


@dataclass(frozen=True)
class EnginePolicy:
    """Immutable engine knobs; built from settings once and passed into every command."""

    proposal_response: timedelta = timedelta(hours=72)
    ticket_response: timedelta = timedelta(hours=48)
    resolution_counter: timedelta = timedelta(hours=24)
    upload_review: timedelta = timedelta(hours=24)
    change_deadline_min_extension: timedelta = timedelta(hours=24)
    resolution_note_min_length: int = 50
    resolution_description_min_length: int = 10
    max_reference_images: int = 5

    @classmethod
    def from_settings(cls, s: Settings) -> "EnginePolicy":
        return cls(
            proposal_response=timedelta(hours=s.PROPOSAL_RESPONSE_HOURS),
            ticket_response=timedelta(hours=s.TICKET_RESPONSE_HOURS),
            resolution_counter=timedelta(hours=s.RESOLUTION_COUNTER_HOURS),
            upload_review=timedelta(hours=s.UPLOAD_REVIEW_HOURS),
            change_deadline_min_extension=timedelta(hours=s.CHANGE_DEADLINE_MIN_EXTENSION_HOURS),
            resolution_note_min_length=s.RESOLUTION_NOTE_MIN_LENGTH,
            resolution_description_min_length=s.RESOLUTION_DESCRIPTION_MIN_LENGTH,
            max_reference_images=s.MAX_REFERENCE_IMAGES,
        )
