# libs/common/broker.py
import logging
import os

from taskiq_redis import RedisAsyncResultBackend, RedisStreamBroker

from common.env import int_from_env
from common.redis_conn import REDIS_URL, redacted_url

log = logging.getLogger("vet-broker")

VET_CHAT_QUEUE = os.getenv("TASKIQ_VET_CHAT_QUEUE", "q:vet_chat")
# task results are only read for debugging; keep them an hour
RESULT_TTL_S = int_from_env("TASKIQ_RESULT_TTL_S", 3600)

# Evidence-chat broker: one streamed agent run per task
vet_chat_broker = RedisStreamBroker(url=REDIS_URL, queue_name=VET_CHAT_QUEUE).with_result_backend(
    RedisAsyncResultBackend(REDIS_URL, prefix_str="result:vet_chat", result_ex_time=RESULT_TTL_S)
)
log.info("broker_init", extra={"queue": VET_CHAT_QUEUE, "redis": redacted_url()})
