"""Echo-poisoning prevention.

Showing a model the same failure over and over tends to make it repeat the
same call. Failures are keyed by (tool, coarse input hash); once a key has
been seen ``loop_threshold`` times a short corrective directive is queued,
and the queue is surfaced exactly once in the next prompt.

References to domain items are checked the same way: an ID a failed call
targeted, or an ID a call claimed to create, that the awareness snapshot
does not know produces a single correction naming it.
"""

import hashlib
import json
import re
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog
from pydantic import BaseModel, ConfigDict, Field


logger = structlog.get_logger(__name__)

DEFAULT_LOOP_THRESHOLD = 2
GENERATION_TOOL = "generation"
CREATED_IDS_KEY = "created_ids"
INPUT_PREVIEW_CHARS = 80
ERROR_PREVIEW_CHARS = 120

CORRECTIONS_HEADER = "## Important Corrections"
CORRECTIONS_FOOTER = "Acknowledge these corrections before proceeding. Do not repeat the same errors."

_WHITESPACE = re.compile(r"\s+")


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return _WHITESPACE.sub(" ", value).strip().lower()
    if isinstance(value, dict):
        return {str(key): _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    return value


def hash_input(payload: Any) -> str:
    """Coarse hash of a tool input, insensitive to key order, case and spacing"""
    canonical = json.dumps(_normalize(payload), sort_keys=True, default=str)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:12]


class FailureSignature(BaseModel):
    """Normalized key of a failed call"""
    model_config = ConfigDict(frozen=True)

    tool_name: str
    input_hash: str
    success: bool = False

    @classmethod
    def from_call(cls, tool_name: str, payload: Any) -> "FailureSignature":
        return cls(tool_name=tool_name, input_hash=hash_input(payload))

    @property
    def key(self) -> str:
        return f"{self.tool_name}:{self.input_hash}:fail"


class CorrectionKind(str, Enum):
    REPEATED_FAILURE = "repeated_failure"
    REPEATED_GENERATION_ERROR = "repeated_generation_error"
    INVALID_REFERENCE = "invalid_reference"
    STALE_STATE = "stale_state"


class CorrectionStatus(str, Enum):
    TRACKING = "tracking"
    PENDING = "pending"
    EMITTED = "emitted"


class CorrectionRecord(BaseModel):
    """Occurrences of one failure signature and the correction it produced"""
    signature: FailureSignature
    kind: CorrectionKind = CorrectionKind.REPEATED_FAILURE
    count: int = 0
    first_iteration: int = 0
    last_iteration: int = 0
    input_preview: str = ""
    last_error: Optional[str] = None
    message: Optional[str] = None
    status: CorrectionStatus = CorrectionStatus.TRACKING


def _preview(payload: Any) -> str:
    try:
        text = json.dumps(payload, sort_keys=True, default=str)
    except (TypeError, ValueError):
        text = str(payload)
    if len(text) > INPUT_PREVIEW_CHARS:
        text = text[:INPUT_PREVIEW_CHARS] + "..."
    return text


def _short_error(error: Optional[str]) -> str:
    if not error:
        return ""
    text = " ".join(error.split())
    return text[:ERROR_PREVIEW_CHARS]


def _ids_in(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        return _ids_in(value.get("id"))
    if isinstance(value, (list, tuple)):
        return [item for entry in value for item in _ids_in(entry)]
    return []


def referenced_ids(payload: Optional[Dict[str, Any]], fields: Iterable[str]) -> List[str]:
    """IDs named by the given input fields; values may be strings, lists or {"id": ...} objects"""
    payload = payload or {}
    return [item for field in fields for item in _ids_in(payload.get(field))]


def detect_id_hallucination(mentioned: Iterable[str], known: Set[str]) -> List[str]:
    """IDs the model mentioned that the domain does not know"""
    return [item for item in mentioned if item not in known]


class ReferenceIssue(BaseModel):
    claimed: str
    message: str


class ReferenceCheck(BaseModel):
    """IDs that failed to resolve against the awareness snapshot"""
    issues: List[ReferenceIssue] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues


class EchoPoisoningPrevention:
    """Detects repeated failures and queues one-time corrections"""

    def __init__(self, loop_threshold: int = DEFAULT_LOOP_THRESHOLD):
        if loop_threshold < 1:
            raise ValueError(f"loop_threshold must be at least 1, got {loop_threshold}")
        self.loop_threshold = loop_threshold
        self.iteration = 0
        self._records: Dict[str, CorrectionRecord] = {}
        self._claims: List[tuple] = []

    @property
    def records(self) -> List[CorrectionRecord]:
        return list(self._records.values())

    def restore(self, records: List[CorrectionRecord]):
        """Replace tracked signatures, used when resuming from a checkpoint"""
        self._records = {record.signature.key: record.model_copy(deep=True) for record in records}

    def set_iteration(self, iteration: int):
        self.iteration = iteration

    def record_tool_result(
        self,
        tool_name: str,
        payload: Optional[Dict[str, Any]],
        success: bool,
        error: Optional[str] = None,
    ) -> Optional[CorrectionRecord]:
        """Track a tool outcome; returns the record when a correction was just queued"""

        if success:
            return None

        signature = FailureSignature.from_call(tool_name, payload or {})
        return self._observe(signature, CorrectionKind.REPEATED_FAILURE, _preview(payload or {}), error)

    def record_generation_error(self, error: str) -> Optional[CorrectionRecord]:
        """Track a failed generation; identical errors are treated as a loop"""

        signature = FailureSignature.from_call(GENERATION_TOOL, _short_error(error))
        return self._observe(signature, CorrectionKind.REPEATED_GENERATION_ERROR, "", error)

    def validate_tool_input(
        self,
        tool_name: str,
        payload: Optional[Dict[str, Any]],
        reference_fields: Iterable[str],
        known_ids: Set[str],
    ) -> ReferenceCheck:
        """Check that every ID a call refers to exists in the known domain state"""

        missing = detect_id_hallucination(referenced_ids(payload, reference_fields), known_ids)
        return ReferenceCheck(issues=[
            ReferenceIssue(claimed=item, message=f'"{tool_name}" targets "{item}", which does not exist')
            for item in missing
        ])

    def validate_tool_result(self, tool_name: str, data: Any, known_ids: Set[str]) -> ReferenceCheck:
        """Check that IDs a call claims to have created show up in the domain state"""

        claimed = _ids_in(data.get(CREATED_IDS_KEY)) if isinstance(data, dict) else []
        return ReferenceCheck(issues=[
            ReferenceIssue(claimed=item, message=f'"{tool_name}" reported creating "{item}", which was not found')
            for item in detect_id_hallucination(claimed, known_ids)
        ])

    def track_created_ids(self, tool_name: str, data: Any):
        """Remember claimed IDs until the next awareness refresh can confirm them"""
        if isinstance(data, dict) and data.get(CREATED_IDS_KEY):
            self._claims.append((tool_name, data))

    def verify_created_ids(self, known_ids: Set[str]) -> ReferenceCheck:
        """Confirm tracked claims against fresh awareness, queueing corrections for missing IDs"""

        issues = []
        for tool_name, data in self._claims:
            issues.extend(self.validate_tool_result(tool_name, data, known_ids).issues)
        self._claims = []

        for issue in issues:
            self.add_invalid_reference_correction(issue.claimed)
        return ReferenceCheck(issues=issues)

    def add_invalid_reference_correction(self, claimed: str) -> Optional[CorrectionRecord]:
        return self.add_correction(
            CorrectionKind.INVALID_REFERENCE,
            claimed,
            f'"{claimed}" does not exist. Look up existing items before referring to them.',
        )

    def add_correction(self, kind: CorrectionKind, subject: Any, message: str) -> Optional[CorrectionRecord]:
        """Queue a one-off correction; a subject already corrected is ignored"""

        signature = FailureSignature.from_call(kind.value, subject)
        if signature.key in self._records:
            return None

        record = CorrectionRecord(
            signature=signature,
            kind=kind,
            count=1,
            first_iteration=self.iteration,
            last_iteration=self.iteration,
            input_preview=_preview(subject),
            message=message,
            status=CorrectionStatus.PENDING,
        )
        self._records[signature.key] = record
        logger.info("Correction queued", kind=kind.value, subject=record.input_preview)
        return record

    def pending_corrections(self) -> List[CorrectionRecord]:
        return [record for record in self._records.values() if record.status == CorrectionStatus.PENDING]

    @property
    def has_pending(self) -> bool:
        return any(record.status == CorrectionStatus.PENDING for record in self._records.values())

    def format_corrections_for_context(self) -> Optional[str]:
        """Render pending corrections as one block and mark them emitted"""

        pending = self.pending_corrections()
        if not pending:
            return None

        bullets = "\n".join(f"- {record.message}" for record in pending)
        for record in pending:
            record.status = CorrectionStatus.EMITTED

        logger.info("Corrections emitted", iteration=self.iteration, count=len(pending))
        return f"{CORRECTIONS_HEADER}\n\n{bullets}\n\n{CORRECTIONS_FOOTER}"

    def _observe(
        self,
        signature: FailureSignature,
        kind: CorrectionKind,
        input_preview: str,
        error: Optional[str],
    ) -> Optional[CorrectionRecord]:
        record = self._records.get(signature.key)
        if record is None:
            record = CorrectionRecord(
                signature=signature,
                kind=kind,
                first_iteration=self.iteration,
                input_preview=input_preview,
            )
            self._records[signature.key] = record

        record.count += 1
        record.last_iteration = self.iteration
        record.last_error = error

        if record.count < self.loop_threshold or record.status != CorrectionStatus.TRACKING:
            return None

        record.message = self._compose(record)
        record.status = CorrectionStatus.PENDING
        logger.warning(
            "Repeated failure detected",
            tool=signature.tool_name,
            input_hash=signature.input_hash,
            count=record.count,
        )
        return record

    def _compose(self, record: CorrectionRecord) -> str:
        reason = _short_error(record.last_error)
        suffix = f" Last error: {reason}." if reason else ""

        if record.kind == CorrectionKind.REPEATED_GENERATION_ERROR:
            return (
                f"Response generation has failed {record.count} times with the same error.{suffix} "
                "Simplify the next step and request fewer actions at once."
            )

        return (
            f'STOP retrying "{record.signature.tool_name}" with input {record.input_preview}. '
            f"It has failed {record.count} times.{suffix} Try a different approach."
        )
