"""FastAPI dependencies for services created in the app lifespan."""

from fastapi import Request

from quoteboard.pipeline import PipelineStore
from quoteboard.reminders import ReminderEngine


def get_store(request: Request) -> PipelineStore:
    return request.app.state.store


def get_reminders(request: Request) -> ReminderEngine:
    return request.app.state.reminders
