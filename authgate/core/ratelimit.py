from typing import Protocol


class RateLimiter(Protocol):
    """Colaborador externo: el núcleo sólo pregunta si la clave tiene presupuesto."""

    async def check_and_consume(self, key: str) -> bool: ...


class AllowAllRateLimiter:
    # default cuando el rate limiting vive en un middleware / gateway
    async def check_and_consume(self, key: str) -> bool:
        return True
