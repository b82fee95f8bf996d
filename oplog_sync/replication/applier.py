"""
Applies one oplog entry at a time to the destination.
"""

import logging

from pymongo.errors import PyMongoError

from ..errors import TransportError
from ..mongodb.connection import StoreConnection
from .models import ApplyResult, LogEntry

logger = logging.getLogger(__name__)


class Applier:
    """
    Submit each entry as a single-element ``applyOps`` batch.

    One source entry per call keeps checkpoint granularity exact: the
    destination either reflects the whole entry or none of it.
    """

    def __init__(self, destination: StoreConnection):
        self.destination = destination

    def apply(self, entry: LogEntry) -> ApplyResult:
        """
        Apply ``entry`` to the destination.

        Returns:
            ApplyResult.ok() or ApplyResult.rejected(reason) when the server
            refused the operation

        Raises:
            TransportError: On network or connection failure
        """
        try:
            response = self.destination.atomic_apply([entry.to_document()])
        except PyMongoError as e:
            raise TransportError(f"Error applying ops: {e}") from e

        if response.ok:
            return ApplyResult.ok()

        logger.debug(
            f"Destination rejected {entry}: {response.errmsg}",
            extra={"namespace": entry.namespace, "reason": response.errmsg}
        )
        return ApplyResult.rejected(response.errmsg or "applyOps returned ok: 0")
