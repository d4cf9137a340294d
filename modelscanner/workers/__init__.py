"""ModelScanner Celery worker package.

Modules
-------
process_worker
    Celery tasks (one per priority lane) wrapping
    :class:`~modelscanner.core.processor.FileProcessor`.
"""
