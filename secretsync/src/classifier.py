from __future__ import annotations

from secretsync.src.config import SyncConfig
from secretsync.src.models import SecretRecord


class Classifier:
    """Decides whether a secret is eligible for replication.

    A secret is in scope only when it lives in the source namespace *and*
    carries the replication type tag.  The check is pure, so it is safe to
    call from any worker thread.
    """

    def __init__(self, config: SyncConfig) -> None:
        self.config = config

    def is_in_scope(self, secret: SecretRecord) -> bool:
        return (
            secret.namespace == self.config.source_namespace
            and secret.type_tag == self.config.sync_type
        )
