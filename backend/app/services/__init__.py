# Services package init
"""
SiteSurvey Backend — Services Layer
=====================================

What:  Business logic between routes (HTTP) and the database / remote storage.

Service Inventory:
    - retry:               execute_with_retry() + RetryPolicy (tenacity)
    - compression_service: ImageCompressor (Pillow)
    - file_service:        IncomingFile + FileService upload validation
    - storage_base:        RemoteStorageClient contract, object naming
    - s3_storage / drive_storage / local_storage: storage backends
    - upload_orchestrator: ingest / ingest_many / replace / discard
    - dealer_service, survey_service, survey_form_service: entity logic

Services never commit; the request-scoped session does (app.database).
"""
