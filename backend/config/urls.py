"""
URL configuration for the knowledge-base backend.
"""
from django.urls import path, include

from apps.rag.health import healthz, readyz
from apps.rag.views import ChatView

urlpatterns = [
    # Health check endpoints (no auth)
    path('healthz', healthz, name='healthz'),
    path('readyz', readyz, name='readyz'),

    # API routes
    path('api/auth/', include('apps.authn.urls')),
    path('api/chat', ChatView.as_view(), name='chat'),
    path('api/chat/', include('apps.chat.urls')),
    path('api/docs/', include('apps.docs.urls')),
    path('api/rag/', include('apps.rag.urls')),
]
