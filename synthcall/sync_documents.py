"""
Thin async wrapper around Twilio Sync Documents.

The Twilio REST client is blocking, so every call runs in a worker thread.
The client's HTTP timeout (set where the client is built) bounds each call.
404 is reported as "absent" (None / False); every other failure becomes
StoreUnavailable so callers can decide to fail open.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)


class RevisionConflict(Exception):
    """Document changed since it was read (If-Match failed) or already exists on create."""


@dataclass
class SyncDocument:
    unique_name: str
    data: Dict[str, Any]
    revision: Optional[str] = None


class SyncDocumentClient:
    """Fetch/create/update/delete Sync documents by unique name."""

    def __init__(self, client: TwilioClient, service_sid: str):
        self.client = client
        self.service_sid = service_sid

    def _service(self):
        return self.client.sync.v1.services(self.service_sid)

    async def fetch(self, unique_name: str) -> Optional[SyncDocument]:
        def _fetch():
            return self._service().documents(unique_name).fetch()

        try:
            document = await asyncio.to_thread(_fetch)
        except TwilioRestException as e:
            if e.status == 404:
                return None
            raise StoreUnavailable(f"fetch {unique_name}", e) from e
        except Exception as e:
            raise StoreUnavailable(f"fetch {unique_name}", e) from e

        return SyncDocument(
            unique_name=unique_name,
            data=document.data or {},
            revision=getattr(document, "revision", None),
        )

    async def create(self, unique_name: str, data: Dict[str, Any], ttl: Optional[int] = None) -> SyncDocument:
        def _create():
            kwargs: Dict[str, Any] = {"unique_name": unique_name, "data": data}
            if ttl is not None:
                kwargs["ttl"] = ttl
            return self._service().documents.create(**kwargs)

        try:
            document = await asyncio.to_thread(_create)
        except TwilioRestException as e:
            if e.status == 409:
                raise RevisionConflict(unique_name) from e
            raise StoreUnavailable(f"create {unique_name}", e) from e
        except Exception as e:
            raise StoreUnavailable(f"create {unique_name}", e) from e

        return SyncDocument(unique_name=unique_name, data=data, revision=getattr(document, "revision", None))

    async def update(
        self,
        unique_name: str,
        data: Dict[str, Any],
        ttl: Optional[int] = None,
        if_match: Optional[str] = None,
    ) -> Optional[SyncDocument]:
        """Replace a document's data. Returns None if the document does not exist."""
        def _update():
            kwargs: Dict[str, Any] = {"data": data}
            if ttl is not None:
                kwargs["ttl"] = ttl
            if if_match is not None:
                kwargs["if_match"] = if_match
            return self._service().documents(unique_name).update(**kwargs)

        try:
            document = await asyncio.to_thread(_update)
        except TwilioRestException as e:
            if e.status == 404:
                return None
            if e.status == 412:
                raise RevisionConflict(unique_name) from e
            raise StoreUnavailable(f"update {unique_name}", e) from e
        except Exception as e:
            raise StoreUnavailable(f"update {unique_name}", e) from e

        return SyncDocument(unique_name=unique_name, data=data, revision=getattr(document, "revision", None))

    async def delete(self, unique_name: str) -> bool:
        def _delete():
            return self._service().documents(unique_name).delete()

        try:
            await asyncio.to_thread(_delete)
        except TwilioRestException as e:
            if e.status == 404:
                return False
            raise StoreUnavailable(f"delete {unique_name}", e) from e
        except Exception as e:
            raise StoreUnavailable(f"delete {unique_name}", e) from e
        return True
