# Generated migration for the Document model

from django.db import migrations, models
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Document',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(help_text='Original filename', max_length=255)),
                ('status', models.CharField(choices=[('uploading', 'Uploading'), ('processing', 'Processing'), ('ready', 'Ready'), ('failed', 'Failed')], db_index=True, default='uploading', help_text='Current status in the ingestion pipeline', max_length=20)),
                ('enabled', models.BooleanField(default=True)),
                ('storage_path', models.CharField(blank=True, help_text='Path to file in storage (relative to upload root)', max_length=500)),
                ('checksum', models.CharField(db_index=True, help_text='SHA-256 hex digest of the uploaded bytes', max_length=64)),
                ('meta', models.JSONField(blank=True, default=dict)),
                ('uploaded_by', models.CharField(blank=True, default='', max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'kb_documents',
                'ordering': ['-created_at'],
            },
        ),
    ]
