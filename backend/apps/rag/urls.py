"""
RAG URL routing.
"""
from django.urls import path

from apps.rag.views import EmbedView

urlpatterns = [
    path('embed', EmbedView.as_view(), name='rag-embed'),
]
