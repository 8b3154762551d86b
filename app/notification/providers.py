"""Delivery capabilities supplied by the host application.

``DeliveryProvider`` sends a rendered message over one channel and reports
a tri-state outcome.  ``TemplateRenderer`` turns a template id plus
variables into message text; a rendering failure is permanent for that
notification.  Transport clients (SMS gateways, SMTP relays, push
services) live outside this package.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from string import Template
from typing import Any, Protocol

from app.core.errors import ConfigurationError, PermanentDeliveryError


# ---------------------------------------------------------------------------
# DeliveryResult
# ---------------------------------------------------------------------------

class Outcome(StrEnum):
    SUCCESS = "success"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Outcome of one provider handoff."""

    outcome: Outcome
    provider_tracking_id: str | None = None
    reason: str | None = None
    error_code: str | None = None

    @classmethod
    def success(cls, provider_tracking_id: str | None = None) -> DeliveryResult:
        return cls(Outcome.SUCCESS, provider_tracking_id=provider_tracking_id)

    @classmethod
    def transient(cls, reason: str, error_code: str | None = None) -> DeliveryResult:
        return cls(Outcome.TRANSIENT_ERROR, reason=reason, error_code=error_code)

    @classmethod
    def permanent(cls, reason: str, error_code: str | None = None) -> DeliveryResult:
        return cls(Outcome.PERMANENT_ERROR, reason=reason, error_code=error_code)


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------

class DeliveryProvider(Protocol):
    def send(self, address: str, message: str) -> DeliveryResult:
        ...


class TemplateRenderer(Protocol):
    def render(self, template_id: str, variables: dict[str, Any]) -> str:
        ...


class ProviderRegistry:
    """Channel → provider lookup."""

    def __init__(self, providers: dict[str, DeliveryProvider] | None = None) -> None:
        self._providers: dict[str, DeliveryProvider] = dict(providers or {})

    def register(self, channel: str, provider: DeliveryProvider) -> None:
        self._providers[str(channel)] = provider

    def get(self, channel: str) -> DeliveryProvider:
        try:
            return self._providers[channel]
        except KeyError:
            raise ConfigurationError(f"No delivery provider registered for channel {channel!r}") from None

    @property
    def channels(self) -> frozenset[str]:
        return frozenset(self._providers)

    def require(self, channels: set[str] | frozenset[str]) -> None:
        """Raise ``ConfigurationError`` unless every channel has a provider."""
        missing = sorted(set(channels) - set(self._providers))
        if missing:
            raise ConfigurationError(f"No delivery provider registered for channels: {missing}")


# ---------------------------------------------------------------------------
# StringTemplateRenderer
# ---------------------------------------------------------------------------

class StringTemplateRenderer:
    """Render ``string.Template`` bodies held in memory or as ``<id>.txt`` files.

    Every placeholder must be supplied; a missing variable or unknown
    template is a ``PermanentDeliveryError``.
    """

    def __init__(
        self,
        templates: dict[str, str] | None = None,
        template_dir: str | Path | None = None,
    ) -> None:
        self.templates = dict(templates or {})
        self.template_dir = Path(template_dir) if template_dir is not None else None

    def _load(self, template_id: str) -> str:
        if template_id in self.templates:
            return self.templates[template_id]

        if self.template_dir is not None:
            path = self.template_dir / f"{template_id}.txt"
            if path.is_file():
                return path.read_text(encoding="utf-8")

        raise PermanentDeliveryError(f"unknown template {template_id!r}", code="template_missing")

    def render(self, template_id: str, variables: dict[str, Any]) -> str:
        body = self._load(template_id)
        try:
            return Template(body).substitute({k: str(v) for k, v in (variables or {}).items()})
        except KeyError as exc:
            raise PermanentDeliveryError(
                f"template {template_id!r} missing variable {exc.args[0]!r}",
                code="template_variable",
            ) from exc
        except ValueError as exc:
            raise PermanentDeliveryError(
                f"template {template_id!r} is malformed", code="template_malformed"
            ) from exc
