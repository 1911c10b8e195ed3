from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from cenabast_sync.services.broker_client import (
    BrokerHttpFailure,
    BrokerOutcome,
    BrokerSoftFailure,
    BrokerSuccess,
    BrokerTransportFailure,
)

_NULL_COLUMN = re.compile(r"column ['\"]?(\w+)['\"]?", re.IGNORECASE)
_CONVERSION_TARGET = re.compile(r"converting.*to ['\"]?(\w+)", re.IGNORECASE)


class BrokerErrorCategory(str, Enum):
    INVALID_DATE_RANGE = 'INVALID_DATE_RANGE'
    FOREIGN_KEY_VIOLATION = 'FOREIGN_KEY_VIOLATION'
    REQUIRED_FIELD_NULL = 'REQUIRED_FIELD_NULL'
    TYPE_CONVERSION_FAILURE = 'TYPE_CONVERSION_FAILURE'
    TIMEOUT = 'TIMEOUT'
    UNAUTHORIZED = 'UNAUTHORIZED'
    NOT_FOUND = 'NOT_FOUND'
    SERVER_ERROR = 'SERVER_ERROR'
    UNKNOWN = 'UNKNOWN'


@dataclass(frozen=True)
class ClassifiedError:
    category: BrokerErrorCategory
    message: str
    details: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    recoverable: bool = True
    status_code: int | None = None

    def as_dict(self) -> dict:
        return {
            'category': self.category.value,
            'message': self.message,
            'details': list(self.details),
            'suggestions': list(self.suggestions),
            'recoverable': self.recoverable,
            'status_code': self.status_code,
        }


def _raw_message(raw: dict) -> str:
    for key in ('errorMessage', 'error', 'message'):
        value = raw.get(key)
        if value:
            return value if isinstance(value, str) else str(value)
    return ''


def _raw_status(raw: dict) -> int | None:
    status = raw.get('statusCode', raw.get('status'))
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def classify(raw: dict | str | None) -> ClassifiedError:
    """Map a broker failure body to a category with remediation hints.

    Matching is by substring over the error text plus the status code. The
    first matching category wins, in the order of BrokerErrorCategory.
    """
    if raw is None:
        raw = {}
    elif isinstance(raw, str):
        raw = {'errorMessage': raw}

    message = _raw_message(raw)
    status_code = _raw_status(raw)
    lowered = message.lower()

    if 'SqlDateTime overflow' in message:
        return ClassifiedError(
            category=BrokerErrorCategory.INVALID_DATE_RANGE,
            message='A date is outside the range accepted by the receiving database (1753-01-01 to 9999-12-31).',
            details=['Check fecha_stock, fecha_movimiento and fecha_vencimiento.'],
            suggestions=[
                'Make sure every date uses the YYYY-MM-DD format.',
                'Remove expiry dates that are null or clearly invalid.',
            ],
            status_code=status_code,
        )

    if 'FOREIGN KEY' in message or 'FK_' in message:
        return ClassifiedError(
            category=BrokerErrorCategory.FOREIGN_KEY_VIOLATION,
            message='The receiving system does not recognise a referenced product or relation.',
            details=['A codigo_generico or id_relacion is not registered in the CENABAST catalog.'],
            suggestions=[
                'Verify that the generic codes exist in the CENABAST product catalog.',
                'Confirm the relation id assigned to this facility.',
            ],
            status_code=status_code,
        )

    if 'Cannot insert NULL' in message or 'does not allow nulls' in message:
        details = ['A required field was sent empty.']
        match = _NULL_COLUMN.search(message)
        if match:
            details.append(f'affected field: {match.group(1)}')
        return ClassifiedError(
            category=BrokerErrorCategory.REQUIRED_FIELD_NULL,
            message='A required field is missing a value.',
            details=details,
            suggestions=['Fill in the affected field before submitting again.'],
            status_code=status_code,
        )

    if 'Conversion failed' in message or 'convert' in lowered:
        details = ['A value has the wrong type for its column.']
        match = _CONVERSION_TARGET.search(message)
        if match:
            details.append(f'expected type: {match.group(1)}')
        return ClassifiedError(
            category=BrokerErrorCategory.TYPE_CONVERSION_FAILURE,
            message='A value could not be converted to the type the receiving system expects.',
            details=details,
            suggestions=[
                'Numeric fields (codigo_generico, cantidad, rut_proveedor) must be integers.',
                'Dates must use the YYYY-MM-DD format.',
            ],
            status_code=status_code,
        )

    if 'timeout' in lowered:
        return ClassifiedError(
            category=BrokerErrorCategory.TIMEOUT,
            message='The broker did not answer in time.',
            details=['The request may still be processed on the broker side.'],
            suggestions=['Retry in a few minutes.', 'Send a smaller batch if the problem persists.'],
            status_code=status_code,
        )

    if status_code == 401 or 'Unauthorized' in message or 'token' in lowered:
        return ClassifiedError(
            category=BrokerErrorCategory.UNAUTHORIZED,
            message='The broker rejected the authentication token.',
            details=['The token is missing, expired or invalid.'],
            suggestions=['Request a new token and retry.'],
            status_code=status_code,
        )

    if status_code == 404:
        return ClassifiedError(
            category=BrokerErrorCategory.NOT_FOUND,
            message='The broker endpoint was not found.',
            details=['The channel path or port may be misconfigured.'],
            suggestions=['Check the broker host and port settings.'],
            recoverable=False,
            status_code=status_code,
        )

    if status_code == 500:
        return ClassifiedError(
            category=BrokerErrorCategory.SERVER_ERROR,
            message='The broker reported an internal error.',
            details=[message[:200]] if message else [],
            suggestions=['Retry later and contact CENABAST support if it persists.'],
            status_code=status_code,
        )

    return ClassifiedError(
        category=BrokerErrorCategory.UNKNOWN,
        message=message or 'Unknown broker error.',
        details=[],
        suggestions=['Review the raw broker response.'],
        recoverable=False,
        status_code=status_code,
    )


def outcome_to_raw(outcome: BrokerOutcome) -> dict:
    if isinstance(outcome, BrokerTransportFailure):
        return {'errorMessage': outcome.message + (' (timeout)' if outcome.timed_out else '')}
    if isinstance(outcome, BrokerHttpFailure):
        return {**outcome.body, 'statusCode': outcome.status_code}
    if isinstance(outcome, BrokerSoftFailure):
        # Soft failures carry the downstream status inside the body.
        return {'statusCode': outcome.status_code, **outcome.body}
    if isinstance(outcome, BrokerSuccess):
        return dict(outcome.data)
    raise ValueError(f'Unsupported broker outcome: {outcome!r}')


def classify_outcome(outcome: BrokerOutcome) -> ClassifiedError:
    if isinstance(outcome, BrokerTransportFailure) and not outcome.timed_out:
        return ClassifiedError(
            category=BrokerErrorCategory.SERVER_ERROR,
            message='The broker could not be reached.',
            details=[outcome.message[:200]],
            suggestions=['Check network connectivity to the broker host.', 'Retry later.'],
            recoverable=True,
        )
    return classify(outcome_to_raw(outcome))


def format_for_user(error: ClassifiedError) -> str:
    lines = [error.message]
    lines.extend(f'- {detail}' for detail in error.details)
    if error.suggestions:
        lines.append('Suggestions:')
        lines.extend(f'- {suggestion}' for suggestion in error.suggestions)
    return '\n'.join(lines)


def format_for_log(error: ClassifiedError) -> str:
    details = '; '.join(error.details)
    return (
        f'[{error.category.value}] {error.message}'
        f' recoverable={error.recoverable} status={error.status_code}'
        + (f' details={details}' if details else '')
    )
