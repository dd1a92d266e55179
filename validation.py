from dataclasses import dataclass
from typing import Any, Mapping, Optional, TypeVar

from pydantic import BaseModel, ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class FieldIssue:
    field: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "message": self.message}


def _issues_from(exc: ValidationError) -> list[FieldIssue]:
    issues: list[FieldIssue] = []
    for error in exc.errors(include_url=False):
        field = ".".join(str(part) for part in error.get("loc", ())) or "body"
        message = str(error.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        issues.append(FieldIssue(field=field, message=message))
    return issues


def validate_input(
    model: type[ModelT], raw: Optional[Mapping[str, Any]]
) -> tuple[Optional[ModelT], list[FieldIssue]]:
    """Validate raw request data against ``model``.

    Returns ``(value, [])`` on success and ``(None, issues)`` otherwise, with
    one issue per violated field, so callers never act on a half-valid input.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        return None, [FieldIssue(field="body", message="Expected a JSON object")]
    try:
        return model.model_validate(dict(raw)), []
    except ValidationError as exc:
        return None, _issues_from(exc)
