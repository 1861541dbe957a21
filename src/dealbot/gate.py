"""
Validation-retry gate for reasoning-unit outputs.

A producer is called, its raw output coerced and validated against a
contract. On failure the producer is called again with a repair directive
describing the errors. After the configured number of repair attempts the
gate returns a failed result; it never raises.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

import orjson
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from dealbot.contracts import SCHEMAS, Contract, format_validation_errors
from dealbot.exceptions import OutputValidationError
from dealbot.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

Producer = Callable[[str | None], Awaitable[Any]]

RAW_EXCERPT_CHARS = 500


@dataclass
class ValidationResult(Generic[T]):
    """Outcome of validating (and possibly repairing) one stage output.

    Attributes:
        ok: Whether a valid output was obtained.
        data: The validated model when ``ok``.
        errors: Formatted errors from the last failed attempt.
        raw: Coerced raw output of the last failed attempt.
        attempts: Number of producer calls made.
        schema: Name of the contract validated against.
    """

    ok: bool
    data: T | None = None
    errors: str = ""
    raw: Any = None
    attempts: int = 0
    history: list[str] = field(default_factory=list)
    schema: str = ""

    @property
    def retry_count(self) -> int:
        return max(0, self.attempts - 1)

    def unwrap(self) -> T:
        """Return the validated model, raising OutputValidationError on failure."""
        if not self.ok or self.data is None:
            raise OutputValidationError(
                "Output failed validation",
                {"schema": self.schema, "errors": self.errors, "attempts": self.attempts},
            )
        return self.data


def _resolve(schema: Contract | str) -> Contract:
    if isinstance(schema, Contract):
        return schema
    return SCHEMAS[schema]


def validate_output(raw: Any, schema: Contract | str) -> ValidationResult[Any]:
    """Coerce and strictly validate a single raw output.

    Args:
        raw: Parsed JSON (or anything) returned by a producer.
        schema: Contract or registered contract name.

    Returns:
        ValidationResult with ``attempts`` left at 0.
    """
    contract = _resolve(schema)
    try:
        coerced = contract.coerce(raw)
    except (TypeError, ValueError, KeyError, AttributeError, OverflowError) as e:
        return ValidationResult(
            ok=False,
            errors=f"- coercion: {type(e).__name__}: {e}",
            raw=raw,
            schema=contract.name,
        )
    try:
        data = contract.model.model_validate(coerced)
    except PydanticValidationError as e:
        return ValidationResult(
            ok=False, errors=format_validation_errors(e), raw=coerced, schema=contract.name
        )
    return ValidationResult(ok=True, data=data, schema=contract.name)


def _excerpt(raw: Any) -> str:
    try:
        text = orjson.dumps(raw, default=str).decode()
    except TypeError:
        text = repr(raw)
    return text[:RAW_EXCERPT_CHARS]


def build_repair_context(schema_name: str, errors: str, raw: Any) -> str:
    """Build the directive passed to a producer after a failed attempt."""
    return "\n".join([
        f"Your previous {schema_name} output failed validation. "
        "Fix these errors and return ONLY valid JSON:",
        "",
        errors,
        "",
        f"Schema: {schema_name}",
        f"Raw output that failed: {_excerpt(raw)}",
    ])


async def produce_validated(
    schema: Contract | str,
    producer: Producer,
    *,
    max_retries: int = 1,
) -> ValidationResult[Any]:
    """Obtain a contract-valid output, repairing at most ``max_retries`` times.

    A producer exception (including a timeout) counts as a failed attempt
    with the exception text as its error.

    Args:
        schema: Contract or registered contract name.
        producer: Async callable taking an optional repair directive.
        max_retries: Extra attempts after the first failure.

    Returns:
        The first successful result, or the last failure.
    """
    contract = _resolve(schema)
    repair_context: str | None = None
    result: ValidationResult[Any] = ValidationResult(ok=False, schema=contract.name)
    history: list[str] = []

    for attempt in range(1, max_retries + 2):
        try:
            raw = await producer(repair_context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            errors = f"- producer: {type(e).__name__}: {e}"
            result = ValidationResult(ok=False, errors=errors, schema=contract.name)
            logger.warning(
                "Producer failed",
                schema=contract.name,
                attempt=attempt,
                error=str(e),
            )
        else:
            result = validate_output(raw, contract)

        result.attempts = attempt
        if result.ok:
            result.history = history
            return result

        history.append(result.errors)
        logger.warning(
            "Output failed validation",
            schema=contract.name,
            attempt=attempt,
            errors=result.errors,
        )
        repair_context = build_repair_context(contract.name, result.errors, result.raw)

    result.history = history
    return result
