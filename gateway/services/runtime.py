from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from gateway.config import Settings
from gateway.services.active_count import ActiveCountCache
from gateway.services.dispatcher import Dispatcher
from gateway.services.forwarder import Forwarder
from gateway.services.session_store import SessionStore
from gateway.services.state_machine import Timeouts
from gateway.services.sweeper import RetentionJob, TimeoutSweeper


@dataclass
class SessionRuntime:
    """Everything the inbound handler and the background jobs share."""

    settings: Settings
    store: SessionStore
    cache: ActiveCountCache
    dispatcher: Dispatcher
    forwarder: Forwarder
    sweeper: TimeoutSweeper
    retention: RetentionJob

    @property
    def timeouts(self) -> Timeouts:
        return self.sweeper.timeouts


def build_runtime(
    settings: Settings,
    session_factory: sessionmaker,
    dispatcher: Dispatcher | None = None,
    forwarder: Forwarder | None = None,
) -> SessionRuntime:
    store = SessionStore(session_factory)
    cache = ActiveCountCache()
    dispatcher = dispatcher or Dispatcher.from_settings(settings)
    forwarder = forwarder or Forwarder.from_settings(settings)
    return SessionRuntime(
        settings=settings,
        store=store,
        cache=cache,
        dispatcher=dispatcher,
        forwarder=forwarder,
        sweeper=TimeoutSweeper.from_settings(settings, store, dispatcher, cache),
        retention=RetentionJob.from_settings(settings, store),
    )


def get_runtime(request: Request) -> SessionRuntime:
    """FastAPI dependency returning the app's shared runtime."""
    return request.app.state.runtime
