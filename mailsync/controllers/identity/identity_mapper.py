import hashlib
import logging
import uuid

from mailsync.exceptions import IdentityCollisionError
from mailsync.models import Message, RemoteItem

LOCAL_ID_PREFIX = "local_"
MESSAGE_ID_PREFIX = "msg_"


class IdentityMapper:
    """Derives message identities from remote coordinates."""

    def __init__(self) -> None:
        self._logger = logging.getLogger(__name__)

    @staticmethod
    def derive_id(account_id: str, folder_id: str, sequence: int) -> str:
        """Stable id for (account, folder, sequence).

        Each component is length-prefixed before hashing so no two distinct triples share an encoding.
        """
        digest = hashlib.sha256()
        for part in (account_id, folder_id, str(int(sequence))):
            encoded = part.encode("utf-8")
            digest.update(len(encoded).to_bytes(4, "big"))
            digest.update(encoded)
        return f"{MESSAGE_ID_PREFIX}{digest.hexdigest()[:32]}"

    @staticmethod
    def local_token() -> str:
        return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"

    @staticmethod
    def is_local(message_id: str) -> bool:
        return message_id.startswith(LOCAL_ID_PREFIX)

    def rekey(self, message: Message, folder_id: str, sequence: int) -> Message:
        """Return ``message`` renamed to the canonical id of its confirmed placement."""
        new_id = self.derive_id(message.account_id, folder_id, sequence)
        self._logger.debug(f"Re-keying {message.id} -> {new_id} ({folder_id}:{sequence})")
        return message.model_copy(update={"id": new_id, "remote_folder": folder_id, "remote_sequence": sequence})

    @staticmethod
    def check_collision(existing: Message, account_id: str, folder_id: str, item: RemoteItem) -> None:
        """Raise if ``existing`` holds the derived id but describes a different remote item."""
        same_coordinates = (
            existing.account_id == account_id
            and existing.remote_sequence == item.sequence
            and existing.remote_folder == folder_id
        )
        if not same_coordinates:
            raise IdentityCollisionError(
                f"Message {existing.id} already holds coordinates "
                f"{existing.account_id}:{existing.remote_folder}:{existing.remote_sequence}",
                message_id=existing.id,
                account_id=account_id,
                folder_id=folder_id,
                sequence=item.sequence,
            )
        if existing.message_id and item.message_id and existing.message_id != item.message_id:
            raise IdentityCollisionError(
                f"Message {existing.id} changed Message-ID from {existing.message_id} to {item.message_id}",
                message_id=existing.id,
                account_id=account_id,
                folder_id=folder_id,
                sequence=item.sequence,
            )
