"""
Ingestion-boundary normalization of backend payloads.

The backend reports products with per-stage keys (``step0Status``,
``step2Progress``, ``step4Results``) and result items whose field names
vary by stage. Everything is converted here into the canonical models of
:mod:`core.models.entities`; nothing past this module looks at raw keys.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .entities import (
    STAGE_COUNT,
    Entity,
    ProgressEntry,
    ResultRecord,
    StageProgress,
    StageResult,
    StageState,
    StageStatus,
)

logger = logging.getLogger(__name__)


NAME_ALIASES = ('regulation', 'element_name', 'component_name', 'name')
TITLE_ALIASES = ('title', 'element_title')
DATE_ALIASES = ('update_date', 'date')
DESCRIPTION_ALIASES = ('description', 'desc', 'element_description', 'element_description_long')
IMPACT_ALIASES = ('impact',)

_CANONICAL_ALIASES = (
    NAME_ALIASES + TITLE_ALIASES + DATE_ALIASES + DESCRIPTION_ALIASES + IMPACT_ALIASES
)

# Where each stage keeps its result list inside a stage payload
RESULT_LIST_FIELDS: Dict[int, Tuple[str, ...]] = {
    0: ('components',),
    1: (),
    2: ('compliance_elements',),
    3: ('compliance_sources', 'compliance_descriptions'),
    4: ('compliance_updates',),
}

# Free-text output of a stage
RESULT_TEXT_FIELDS: Dict[int, Tuple[str, ...]] = {
    0: ('product_overview', 'product_decomposition'),
    1: ('compliance_assessment',),
    2: (),
    3: (),
    4: (),
}

STATUS_ALIASES: Dict[str, StageStatus] = {
    'pending': StageStatus.PENDING,
    'not_started': StageStatus.PENDING,
    'running': StageStatus.RUNNING,
    'in_progress': StageStatus.RUNNING,
    'processing': StageStatus.RUNNING,
    'completed': StageStatus.COMPLETED,
    'complete': StageStatus.COMPLETED,
    'needs_review': StageStatus.COMPLETED,
    'failed': StageStatus.ERROR,
    'error': StageStatus.ERROR,
}


def _first(raw: Mapping[str, Any], aliases: Iterable[str]) -> Any:
    for key in aliases:
        value = raw.get(key)
        if value not in (None, ''):
            return value
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, str):
        return value
    return str(value)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value)
    if isinstance(value, str):
        text = value[:-1] + '+00:00' if value.endswith('Z') else value
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            logger.debug(f"Ignoring unparseable timestamp: {value}")
    return None


def normalize_status(raw: Any) -> StageStatus:
    """Map a backend status string onto the four-state model"""
    if isinstance(raw, StageStatus):
        return raw
    if raw is None:
        return StageStatus.PENDING
    status = STATUS_ALIASES.get(str(raw).strip().lower())
    if status is None:
        logger.warning(f"Unknown stage status {raw!r}, treating as pending")
        return StageStatus.PENDING
    return status


def normalize_record(raw: Any) -> ResultRecord:
    """Fold a raw result item into a ResultRecord"""
    if isinstance(raw, ResultRecord):
        return raw
    if not isinstance(raw, Mapping):
        return ResultRecord(description=_as_text(raw))

    extra = {
        key: value for key, value in raw.items()
        if key not in _CANONICAL_ALIASES
    }
    return ResultRecord(
        name=_as_text(_first(raw, NAME_ALIASES)),
        title=_as_text(_first(raw, TITLE_ALIASES)),
        date=_as_text(_first(raw, DATE_ALIASES)),
        description=_as_text(_first(raw, DESCRIPTION_ALIASES)),
        impact=_as_text(_first(raw, IMPACT_ALIASES)),
        extra=extra,
    )


def normalize_records(raw: Optional[Iterable[Any]]) -> List[ResultRecord]:
    if not raw:
        return []
    return [normalize_record(item) for item in raw]


def normalize_progress(raw: Any) -> Optional[StageProgress]:
    """Convert a ``{current, percentage, steps}`` mapping into StageProgress"""
    if raw is None:
        return None
    if isinstance(raw, StageProgress):
        return raw
    if not isinstance(raw, Mapping):
        return None

    history = []
    for step in raw.get('steps') or raw.get('history') or []:
        if isinstance(step, Mapping):
            history.append(ProgressEntry(
                message=_as_text(step.get('message')),
                timestamp=_parse_timestamp(step.get('timestamp')),
            ))
        else:
            history.append(ProgressEntry(message=_as_text(step)))

    return StageProgress(
        percentage=raw.get('percentage', 0.0),
        current_label=raw.get('current') or raw.get('current_label'),
        history=tuple(history),
    )


def normalize_stage_result(stage: int, raw: Any) -> Optional[StageResult]:
    """
    Convert a stage payload into a StageResult.

    Accepts a bare list of items, a mapping holding the stage's list field
    and/or text field, or plain text.
    """
    if raw is None:
        return None
    if isinstance(raw, StageResult):
        return raw

    now = datetime.now()
    if isinstance(raw, str):
        return StageResult(stage=stage, text=raw, fetched_at=now)
    if isinstance(raw, (list, tuple)):
        return StageResult(stage=stage, records=tuple(normalize_records(raw)), fetched_at=now)
    if not isinstance(raw, Mapping):
        logger.warning(f"Unsupported result payload for stage {stage}: {type(raw).__name__}")
        return None

    records: List[ResultRecord] = []
    for field_name in RESULT_LIST_FIELDS.get(stage, ()):
        items = raw.get(field_name)
        if items:
            records = normalize_records(items)
            break

    text = _first(raw, RESULT_TEXT_FIELDS.get(stage, ()))
    if text is not None and not isinstance(text, str):
        text = _as_text(text)

    return StageResult(stage=stage, records=tuple(records), text=text, fetched_at=now)


def normalize_entity(raw: Mapping[str, Any]) -> Entity:
    """
    Build an Entity from a backend product payload.

    Raises:
        ValueError: if the payload carries no identifier
    """
    if isinstance(raw, Entity):
        return raw

    entity_id = raw.get('id') or raw.get('_id') or raw.get('product_id')
    if not entity_id:
        raise ValueError("Product payload has no id")

    stages = []
    results: Dict[int, StageResult] = {}
    for index in range(STAGE_COUNT):
        stages.append(StageState(
            status=normalize_status(raw.get(f'step{index}Status')),
            progress=normalize_progress(raw.get(f'step{index}Progress')),
            error=raw.get(f'step{index}Error'),
        ))
        result = normalize_stage_result(index, raw.get(f'step{index}Results'))
        if result is not None:
            results[index] = result

    markets = raw.get('markets') or ()
    if isinstance(markets, str):
        markets = (markets,)

    return Entity(
        id=str(entity_id),
        name=_as_text(raw.get('name')),
        description=raw.get('description'),
        product_type=raw.get('type') or raw.get('product_type'),
        markets=tuple(str(m) for m in markets),
        stages=tuple(stages),
        results=results,
    )


def normalize_entities(raw: Optional[Iterable[Mapping[str, Any]]]) -> List[Entity]:
    """Normalize a product list, skipping payloads without an id"""
    entities = []
    for item in raw or []:
        try:
            entities.append(normalize_entity(item))
        except ValueError as e:
            logger.warning(f"Skipping malformed product payload: {e}")
    return entities
