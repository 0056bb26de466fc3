from common.broker import vet_chat_broker

from .vet_chat_tasks import process_vet_evidence_chat_task


__all__ = ["vet_chat_broker",
           "process_vet_evidence_chat_task"]
