"""External control-plane client protocol.

One client serves one or more resource kinds. All methods take the full
descriptor; during teardown the descriptor is rebuilt from the ledger
record, so clients must only rely on ``id``, ``kind`` and ``spec``.

Error contract (see ``sequencer.errors``):
  - ``create`` raises ``ResourceAlreadyExists`` when the identity is taken,
    ``TransientError`` for retryable failures and ``PermanentError``
    otherwise.
  - ``get_status`` returns the provider snapshot or raises
    ``ResourceNotFound``.
  - ``delete`` raises ``ResourceNotFound`` when the resource is absent.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from ..descriptors.model import ResourceDescriptor, ResourceKind


class ControlPlaneClient(Protocol):
    """Create, inspect and delete one kind of external resource."""

    def external_identity(self, descriptor: ResourceDescriptor) -> str:
        """Stable identity derived from the descriptor (never generated)."""
        ...

    async def create(self, descriptor: ResourceDescriptor) -> None:
        """Submit the create/update call. Returns once accepted."""
        ...

    async def get_status(self, descriptor: ResourceDescriptor) -> Mapping[str, Any]:
        """Return the provider's status snapshot for the resource."""
        ...

    async def delete(self, descriptor: ResourceDescriptor) -> None:
        """Submit the delete call. Returns once accepted."""
        ...


class ClientRegistry:
    """Maps resource kinds to the client responsible for them."""

    def __init__(
        self, clients: Mapping[ResourceKind, ControlPlaneClient] | None = None,
    ) -> None:
        self._clients: dict[ResourceKind, ControlPlaneClient] = dict(clients or {})

    def register(
        self, kinds: ResourceKind | tuple[ResourceKind, ...], client: ControlPlaneClient,
    ) -> None:
        if isinstance(kinds, ResourceKind):
            kinds = (kinds,)
        for kind in kinds:
            self._clients[kind] = client

    def for_kind(self, kind: ResourceKind) -> ControlPlaneClient:
        try:
            return self._clients[kind]
        except KeyError:
            raise LookupError(f'no control-plane client registered for {kind.value}') from None

    def __contains__(self, kind: object) -> bool:
        return kind in self._clients
