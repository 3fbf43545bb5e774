# src/facility_messaging/services/__init__.py
"""Messaging services used by the coordinator."""

from .block_list import REPORT_REASONS, BlockList
from .message_stream import MessageStream, MessageStreamCache, merge_messages
from .polls import PollService
from .read_receipts import ReadReceiptTracker, derive_read_by
from .recipients import RecipientResolver
from .send_pipeline import OperationState, PendingOperation, SendPipeline
from .thread_directory import Actor, ThreadDirectory, ThreadFilter

__all__ = [
    "Actor",
    "BlockList",
    "MessageStream",
    "MessageStreamCache",
    "OperationState",
    "PendingOperation",
    "PollService",
    "ReadReceiptTracker",
    "RecipientResolver",
    "REPORT_REASONS",
    "SendPipeline",
    "ThreadDirectory",
    "ThreadFilter",
    "derive_read_by",
    "merge_messages",
]
