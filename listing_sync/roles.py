from __future__ import annotations

from dataclasses import dataclass

SUPPORTED_ROLES = (
    "api",
    "coordinator",
    "worker",
    "verifier",
)

CONSUMER_ROLES = ("worker", "verifier")


@dataclass(frozen=True)
class RuntimeRole:
    name: str

    @property
    def is_consumer(self) -> bool:
        return self.name in CONSUMER_ROLES


def validate_role(role: str) -> RuntimeRole:
    if role in SUPPORTED_ROLES:
        return RuntimeRole(name=role)

    supported = ", ".join(SUPPORTED_ROLES)
    raise ValueError(
        f"Unsupported role '{role}'. Supported roles: {supported}. "
        "Note: schema migrations are applied externally and are not an app role."
    )
