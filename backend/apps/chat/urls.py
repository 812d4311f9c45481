"""
URL configuration for the chat app.
"""
from django.urls import path

from . import views

app_name = 'chat'

urlpatterns = [
    path('sessions', views.session_list, name='sessions'),
    path('sessions/latest', views.latest_session, name='latest-session'),
    path('sessions/<uuid:session_id>/messages', views.session_messages, name='session-messages'),
]
