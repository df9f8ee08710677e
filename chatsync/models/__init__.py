from chatsync.models.change_event import ChangeEventRecord
from chatsync.models.document import DocumentRecord

__all__ = [
    "ChangeEventRecord",
    "DocumentRecord",
]
