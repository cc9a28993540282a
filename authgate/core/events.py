"""
Security events.

El sink recibe sólo campos de una lista cerrada (usuario, tipo de método, ip,
clase de user-agent, severidad, motivo). No hay forma de pasarle secretos,
códigos, passwords ni tokens.
"""

from dataclasses import dataclass
from typing import Protocol

import structlog

INFO = "info"
HIGH = "high"


@dataclass(frozen=True)
class RequestContext:
    ip: str | None = None
    user_agent_class: str = "unknown"


class SecurityEventSink(Protocol):
    def emit(
        self,
        event: str,
        *,
        user_id: str | None = None,
        method_type: str | None = None,
        ip: str | None = None,
        user_agent_class: str | None = None,
        severity: str = INFO,
        reason: str | None = None,
    ) -> None: ...


class StructlogEventSink:
    def __init__(self, logger_name: str = "security"):
        self.logger = structlog.get_logger(logger_name)

    def emit(
        self,
        event: str,
        *,
        user_id: str | None = None,
        method_type: str | None = None,
        ip: str | None = None,
        user_agent_class: str | None = None,
        severity: str = INFO,
        reason: str | None = None,
    ) -> None:
        payload = {
            "user_id": user_id,
            "method_type": method_type,
            "ip": ip,
            "user_agent_class": user_agent_class,
            "severity": severity,
        }
        if reason:
            payload["reason"] = reason
        if severity == HIGH:
            self.logger.warning(event, **payload)
        else:
            self.logger.info(event, **payload)


def classify_user_agent(user_agent: str | None) -> str:
    """Reduce el User-Agent a una clase gruesa (no se guarda el string completo)."""
    ua = (user_agent or "").lower()
    if not ua:
        return "unknown"
    if any(k in ua for k in ("curl", "httpie", "python", "wget", "postman", "okhttp")):
        return "cli"
    if any(k in ua for k in ("iphone", "android", "mobile", "ipad")):
        return "mobile"
    if "mozilla" in ua:
        return "browser"
    return "other"
