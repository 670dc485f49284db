"""
OAuth client registry.
"""

import secrets
import string
from typing import List, Optional, Tuple

from loguru import logger

from tenant_idp.oauth.codec import TokenCodec
from tenant_idp.oauth.errors import INVALID_CLIENT, OAuthError
from tenant_idp.oauth.schemas import Client, ClientCreateRequest, ClientUpdateRequest
from tenant_idp.store.base import DataStore

_ALPHABET = string.ascii_letters + string.digits


def generate_client_id() -> str:
    return "client_" + "".join(secrets.choice(_ALPHABET) for _ in range(24))


def generate_client_secret() -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(48))


class ClientRegistry:
    def __init__(self, store: DataStore, codec: TokenCodec):
        self.store = store
        self.codec = codec

    async def get(self, client_id: Optional[str]) -> Optional[Client]:
        """Load an active client."""
        if not client_id:
            return None
        client = await self.store.get_client(client_id)
        if not client or not client.is_active:
            return None
        return client

    async def get_any(self, client_id: str) -> Optional[Client]:
        """Load a client including inactive ones (administration only)."""
        return await self.store.get_client(client_id)

    async def create(self, request: ClientCreateRequest) -> Tuple[Client, str]:
        """
        Register a client; returns the record and the plain secret, which is only
        ever available here.
        """
        plain_secret = generate_client_secret()
        client = Client(
            client_id=generate_client_id(),
            client_secret_hash=self.codec.hash_secret(plain_secret),
            **request.model_dump(),
        )
        await self.store.create_client(client)
        logger.info(f"Registered OAuth client {client.client_id} ({client.name})")
        return client, plain_secret

    async def update(self, client_id: str, request: ClientUpdateRequest) -> Optional[Client]:
        changes = request.model_dump(exclude_unset=True)
        return await self.store.update_client(client_id, changes)

    async def delete(self, client_id: str) -> bool:
        deleted = await self.store.delete_client(client_id)
        if deleted:
            logger.info(f"Deleted OAuth client {client_id}")
        return deleted

    async def list(
        self, is_active: Optional[bool] = None, is_first_party: Optional[bool] = None
    ) -> List[Client]:
        return await self.store.list_clients(is_active=is_active, is_first_party=is_first_party)

    async def regenerate_secret(self, client_id: str) -> Optional[str]:
        plain_secret = generate_client_secret()
        updated = await self.store.update_client(
            client_id, {"client_secret_hash": self.codec.hash_secret(plain_secret)}
        )
        if not updated:
            return None
        logger.info(f"Regenerated secret for OAuth client {client_id}")
        return plain_secret

    async def authenticate(self, client_id: Optional[str], client_secret: Optional[str]) -> Client:
        """
        Verify client credentials against the stored hash.
        """
        if not client_id or not client_secret:
            raise OAuthError(INVALID_CLIENT, "Client authentication failed")
        client = await self.get(client_id)
        if not client or not self.codec.verify_secret(client_secret, client.client_secret_hash):
            logger.warning(f"Client authentication failed for {client_id}")
            raise OAuthError(INVALID_CLIENT, "Client authentication failed")
        return client
