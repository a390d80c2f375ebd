"""ASGI entrypoint for the FasterFoods sync service."""

from fasterfoods_sync.api.app import create_app
from fasterfoods_sync.config import Settings
from fasterfoods_sync.containers import build_container

settings = Settings()
app = create_app(build_container(settings))
