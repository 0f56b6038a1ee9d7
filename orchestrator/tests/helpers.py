"""Test doubles and helpers shared across the test modules."""

from orchestrator.src.services.events import EventBus

REPO_URL = "https://github.com/acme/bfb-management.git"

async def no_sleep(seconds):
    return None

def event_names(bus: EventBus):
    return [message["event"] for message in bus.drain()]
