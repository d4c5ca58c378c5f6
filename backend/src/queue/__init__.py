from src.queue.dispatchers import CeleryDispatcher, LocalDispatcher
from src.queue.job_queue import JobQueue
from src.queue.job_store import MemoryJobStore, RedisJobStore
from src.queue.policy import DEFAULT_POLICIES, LANES, LanePolicy, build_lane_policies

__all__ = [
    "JobQueue",
    "CeleryDispatcher",
    "LocalDispatcher",
    "MemoryJobStore",
    "RedisJobStore",
    "LanePolicy",
    "LANES",
    "DEFAULT_POLICIES",
    "build_lane_policies",
]
