"""
WebSocket URL routing for the indexing app.
"""
from django.urls import re_path

from apps.indexing.consumers import IngestionProgressConsumer

websocket_urlpatterns = [
    re_path(r"ws/ingestion/?$", IngestionProgressConsumer.as_asgi()),
]
