"""
URL configuration for the docs app.
"""
from django.urls import path
from . import views

app_name = 'docs'

urlpatterns = [
    path('upload', views.upload_document, name='upload'),
    path('', views.list_documents, name='list'),
    path('<uuid:document_id>', views.document_detail, name='detail'),
    path('<uuid:document_id>/toggle', views.toggle_document, name='toggle'),
    path('<uuid:document_id>/reprocess', views.reprocess_document, name='reprocess'),
    path('<uuid:document_id>/chunks/<int:chunk_index>', views.get_chunk, name='chunk'),
]
