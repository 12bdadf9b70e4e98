"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from placetalk.api import discovery, ops, pins
from placetalk.api.errors import install_error_handlers
from placetalk.domain.pins import container
from placetalk.domain.pins.lifecycle import JOB_NAME
from placetalk.infra import postgres, tasks
from placetalk.infra.redis import redis_client
from placetalk.infra.scheduler import JobScheduler
from placetalk.obs import init as obs_init
from placetalk.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	if settings.uses_postgres():
		pool = await postgres.init_pool()
		container.configure_postgres(pool, redis_client)
	else:
		logger.warning("running with in-memory stores; data is lost on restart")
		container.configure_memory(redis_client)
	scheduler: JobScheduler | None = None
	if settings.lifecycle_worker_enabled:
		scheduler = JobScheduler()
		scheduler.start()
		reconciler = container.get_reconciler()
		scheduler.schedule_interval(JOB_NAME, reconciler.run_once, seconds=settings.lifecycle_interval_seconds)
		app.state.lifecycle_scheduler = scheduler
	try:
		yield
	finally:
		if scheduler is not None:
			scheduler.shutdown()
		await tasks.drain(timeout=settings.store_timeout_seconds)
		await tasks.shutdown()
		await postgres.close_pool()


app = FastAPI(title="PlaceTalk Proximity Core", lifespan=lifespan)

install_error_handlers(app)
obs_init(app)

app.include_router(pins.router)
app.include_router(discovery.router)
app.include_router(ops.router)
