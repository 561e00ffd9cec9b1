"""
Job records and the normalizer that builds them from template descriptors.

Clients send templates in several historical shapes (prompt under `prompt`
or `details`, image under `imageUrl`/`image`/`image_url`, ids that may be
missing). Everything downstream works on the uniform `Job` record only.
"""

from __future__ import annotations

import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .errors import RequestInvalid

EMPTY_TEMPLATES_MESSAGE = "At least one template is required."
MISSING_BASE_IMAGE_MESSAGE = "Base image URL is required."


@dataclass(frozen=True)
class Job:
    id: str
    display_name: str
    prompt: str
    model: str
    reference_image_url: Optional[str]
    index: int = 0  # position in the submitted template list

    @property
    def has_prompt(self) -> bool:
        return bool(self.prompt.strip())


@dataclass(frozen=True)
class BatchRun:
    jobs: Sequence[Job]
    batch_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total(self) -> int:
        return len(self.jobs)

    def ordered(self, preserve_order: bool, rng: Optional[random.Random] = None) -> List[Job]:
        """Return the dispatch order: submission order, or a shuffled copy."""
        jobs = list(self.jobs)
        if not preserve_order:
            (rng or random).shuffle(jobs)
        return jobs


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _first_text(*candidates: Any) -> Optional[str]:
    for candidate in candidates:
        cleaned = _clean(candidate)
        if cleaned:
            return cleaned
    return None


def _resolve_image(template: Mapping[str, Any]) -> Optional[str]:
    for key in ("imageUrl", "image", "image_url"):
        value = template.get(key)
        if isinstance(value, (list, tuple)):
            value = _first_text(*value)
        cleaned = _clean(value)
        if cleaned:
            return cleaned
    return None


def _resolve_id(template: Mapping[str, Any], position: int) -> str:
    for key in ("id", "templateId"):
        value = template.get(key)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return str(value)
        cleaned = _clean(value)
        if cleaned:
            return cleaned
    return str(position)


def normalize_template(
    template: Any,
    position: int,
    *,
    base_image_url: Optional[str] = None,
    default_model: str,
    prefer_request_model: bool = False,
) -> Job:
    """
    Canonicalize one descriptor into a `Job`.

    A blank prompt is kept as "" so the orchestrator can report it as a
    per-job error instead of silently dropping the template.

    With `prefer_request_model`, `default_model` (the request-level choice)
    wins over any model carried by the template itself.
    """
    if not isinstance(template, Mapping):
        template = {}

    job_id = _resolve_id(template, position)
    form_data = template.get("formData")
    form_model = form_data.get("aiModel") if isinstance(form_data, Mapping) else None

    prompt = _first_text(template.get("prompt"), template.get("details")) or ""
    if prefer_request_model:
        model = default_model
    else:
        model = _first_text(template.get("model"), template.get("aiModel"), form_model) or default_model
    display_name = (
        _first_text(template.get("name"), template.get("templateName"), template.get("title")) or job_id
    )

    return Job(
        id=job_id,
        display_name=display_name,
        prompt=prompt,
        model=model,
        reference_image_url=_resolve_image(template) or _clean(base_image_url),
        index=position,
    )


def normalize_templates(
    templates: Optional[Iterable[Any]],
    *,
    default_model: str,
    base_image_url: Optional[str] = None,
    require_base_image: bool = False,
    prefer_request_model: bool = False,
) -> List[Job]:
    """
    Normalize a whole template list.

    Raises:
        RequestInvalid: when the list is empty, or when `require_base_image`
            is set and no base image was supplied.
    """
    items = list(templates or [])
    if not items:
        raise RequestInvalid(EMPTY_TEMPLATES_MESSAGE)
    if require_base_image and not _clean(base_image_url):
        raise RequestInvalid(MISSING_BASE_IMAGE_MESSAGE)

    return [
        normalize_template(
            template,
            position,
            base_image_url=base_image_url,
            default_model=default_model,
            prefer_request_model=prefer_request_model,
        )
        for position, template in enumerate(items)
    ]
