from fastapi import Request

from ..services.job_queue import JobQueue
from ..services.result_cache import ResultCache


def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.job_queue


def get_result_cache(request: Request) -> ResultCache:
    return request.app.state.result_cache
