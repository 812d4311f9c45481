"""
HNSW index on kb_embeddings.vector for fast cosine search.

Only created on PostgreSQL; the sqlite development database scans.
"""
from django.db import migrations


CREATE_SQL = """
    CREATE INDEX IF NOT EXISTS kb_embeddings_vector_hnsw_idx
    ON kb_embeddings
    USING hnsw (vector vector_cosine_ops)
    WITH (m = 16, ef_construction = 64);
"""

DROP_SQL = "DROP INDEX IF EXISTS kb_embeddings_vector_hnsw_idx;"


def create_index(apps, schema_editor):
    if schema_editor.connection.vendor == 'postgresql':
        schema_editor.execute(CREATE_SQL)


def drop_index(apps, schema_editor):
    if schema_editor.connection.vendor == 'postgresql':
        schema_editor.execute(DROP_SQL)


class Migration(migrations.Migration):

    dependencies = [
        ('indexing', '0001_initial'),
    ]

    operations = [
        migrations.RunPython(create_index, drop_index),
    ]
