from __future__ import annotations

from typing import Any, Callable, TypeVar

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from .id58 import uuid4_base58_22
from .retry import epoch_seconds, sleep
from .shared import LockUnavailableError, _require_str, error_code, log_event

T = TypeVar("T")

LOCK_RETRY_INTERVAL_SECONDS = 1.0


class LockService:
    """Named write locks in a DynamoDB table with a ``ttl`` attribute.

    A lock is free when its row is absent or its ``ttl`` has passed. The holder
    is identified by a random token so only the owner can release it.
    """

    def __init__(
        self,
        table: Any,
        *,
        clock: Callable[[], int] = epoch_seconds,
        sleep_fn: Callable[[float], None] = sleep,
    ) -> None:
        self.table = table
        self.clock = clock
        self.sleep_fn = sleep_fn

    def obtain_write_lock(self, lock_id: str, expires_in: int = 25) -> str | None:
        lock_id = _require_str(lock_id, "lock id")
        now = self.clock()
        token = uuid4_base58_22()
        try:
            self.table.update_item(
                Key={"id": lock_id},
                UpdateExpression="SET #t = :ttl, #o = :token",
                ExpressionAttributeNames={"#t": "ttl", "#o": "token"},
                ExpressionAttributeValues={":ttl": now + int(expires_in), ":token": token},
                ConditionExpression=Attr("id").not_exists() | Attr("ttl").lt(now),
            )
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                return None
            raise
        return token

    def try_write_lock(self, lock_id: str, expires_in: int = 25, attempts: int = 15) -> str | None:
        attempts = max(1, int(attempts))
        for attempt in range(attempts):
            token = self.obtain_write_lock(lock_id, expires_in)
            if token:
                return token
            if attempt < attempts - 1:
                self.sleep_fn(LOCK_RETRY_INTERVAL_SECONDS)
        return None

    def release_write_lock(self, lock_id: str, token: str) -> None:
        try:
            self.table.delete_item(
                Key={"id": lock_id},
                ConditionExpression=Attr("token").eq(token),
            )
        except ClientError as e:
            # Expired and taken over by someone else; nothing of ours to release.
            if error_code(e) == "ConditionalCheckFailedException":
                return
            raise

    def try_write_lock_and_run(
        self,
        lock_id: str,
        fn: Callable[[], T],
        *,
        expires_in: int = 25,
        attempts: int = 15,
    ) -> T:
        token = self.try_write_lock(lock_id, expires_in, attempts)
        if not token:
            log_event("lock_unavailable", lock_id=lock_id, attempts=attempts)
            raise LockUnavailableError(f"could not obtain a lock for '{lock_id}'")
        try:
            return fn()
        finally:
            self.release_write_lock(lock_id, token)
