"""
Django management command to ingest a document synchronously.

Usage:
    python manage.py ingest_document path/to/manual.pdf
    python manage.py ingest_document --reprocess <document-id>
"""
from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from apps.docs.models import Document
from apps.indexing.events import IngestionProgress, IngestionStep
from apps.rag.services import get_services


class Command(BaseCommand):
    help = 'Ingest a document into the knowledge base, printing progress'

    def add_arguments(self, parser):
        parser.add_argument('path', nargs='?', help='File to ingest (.pdf, .txt, .md)')
        parser.add_argument(
            '--reprocess',
            metavar='DOCUMENT_ID',
            help='Re-run ingestion for an existing document instead',
        )
        parser.add_argument(
            '--uploaded-by',
            default='cli',
            help='Subject recorded as the uploader',
        )

    def _report(self, event: IngestionProgress) -> None:
        line = f"[{event.step.value:>10}] {event.progress:3d}% {event.message}"
        if event.step == IngestionStep.ERROR:
            self.stderr.write(self.style.ERROR(line))
        elif event.step == IngestionStep.DONE:
            self.stdout.write(self.style.SUCCESS(line))
        else:
            self.stdout.write(line)

    def handle(self, *args, **options):
        services = get_services()
        pipeline = services.pipeline

        try:
            if options['reprocess']:
                try:
                    result = pipeline.reprocess(options['reprocess'], self._report)
                except Document.DoesNotExist:
                    raise CommandError(f"No document {options['reprocess']}")
            else:
                if not options['path']:
                    raise CommandError('A file path or --reprocess is required')
                path = Path(options['path'])
                if not path.is_file():
                    raise CommandError(f"Not a file: {path}")
                result = pipeline.ingest(
                    path.name,
                    path.read_bytes(),
                    self._report,
                    uploaded_by=options['uploaded_by'],
                )
        except CommandError:
            raise
        except Exception as e:
            raise CommandError(f"Ingestion failed: {e}")
        finally:
            services.close()

        self.stdout.write(
            f"Document {result.document_id}: {result.page_count} pages, {result.chunk_count} chunks"
        )
