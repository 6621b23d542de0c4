"""
Account Directory
=================

Resolves a reporting client to its ad account id on a given platform.

WHAT:
    `get_account_id(client_id, platform)` returns the Meta ad account id
    ("act_...") or the Google customer id for a client.

WHY:
    The platform capability takes an account id, while callers only know
    the client. Keeping the lookup behind one method lets the orchestrator
    stay ignorant of how clients are stored.

RAISES:
    ProviderNotConnectedError when the client has no account on the platform.

RELATED FILES
-------------
- adreport/models.py: Client
- adreport/services/live_fetch.py: Consumer
- adreport/workers/arq_worker.py: list_clients() drives scheduled refreshes
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from adreport.exceptions import ProviderNotConnectedError
from adreport.models import Client, PlatformEnum

logger = logging.getLogger(__name__)


def _platform_value(platform) -> str:
    return str(getattr(platform, "value", platform))


class SqlAccountDirectory:
    """Reads account ids from the `clients` table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _get_sync(self, client_id: str, platform: str) -> Optional[str]:
        db = self._session_factory()
        try:
            client = db.query(Client).filter(Client.id == client_id).first()
            if client is None:
                return None
            if platform == PlatformEnum.meta.value:
                return client.meta_ad_account_id
            return client.google_customer_id
        finally:
            db.close()

    async def get_account_id(self, client_id: str, platform) -> str:
        platform = _platform_value(platform)
        account_id = await asyncio.to_thread(self._get_sync, client_id, platform)
        if not account_id:
            logger.info(f"[ACCOUNTS] Client {client_id} has no {platform} account")
            raise ProviderNotConnectedError(platform, client_id=client_id)
        return account_id

    def _list_sync(self) -> List[Tuple[str, str]]:
        db = self._session_factory()
        try:
            pairs = []
            for client in db.query(Client).order_by(Client.name).all():
                if client.meta_ad_account_id:
                    pairs.append((client.id, PlatformEnum.meta.value))
                if client.google_customer_id:
                    pairs.append((client.id, PlatformEnum.google.value))
            return pairs
        finally:
            db.close()

    async def list_clients(self) -> List[Tuple[str, str]]:
        """(client_id, platform) pairs that have a connected account."""
        return await asyncio.to_thread(self._list_sync)


class StaticAccountDirectory:
    """In-memory directory: {(client_id, platform): account_id}."""

    def __init__(self, accounts: Dict[Tuple[str, str], str]):
        self._accounts = {(str(c), _platform_value(p)): a for (c, p), a in accounts.items()}

    async def get_account_id(self, client_id: str, platform) -> str:
        platform = _platform_value(platform)
        account_id = self._accounts.get((str(client_id), platform))
        if not account_id:
            raise ProviderNotConnectedError(platform, client_id=client_id)
        return account_id

    async def list_clients(self) -> List[Tuple[str, str]]:
        return sorted(self._accounts)
