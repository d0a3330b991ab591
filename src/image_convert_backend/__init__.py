"""
Image Convert Backend - REST API for batch image to document conversion

This package provides a FastAPI-based web service that turns a batch of
uploaded images into a single PDF, DOCX or PPTX document and shares it with a
class. It enables:

- Image batch uploads and admission checks
- Background conversion jobs that never block the uploading client
- Per-image fault tolerance with labelled placeholder pages
- Job status polling and conversion history
- Upload to S3 (or a local directory) and registration as class material

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Job lifecycle, state machine and background execution
    - converters: PDF, DOCX and PPTX renderers
    - validation: Batch admission rules
    - staging: Temporary storage of uploaded image bytes
    - database: SQLite persistence of job records
    - storage: S3 and local document storage
    - materials: Registration of finished documents as class materials
    - identity: API key to educator/admin resolution
    - client: Polling client
    - configuration: Config loading and logging setup

Usage:
    Run the API server with:
        uvicorn image_convert_backend.main:app --reload --host 0.0.0.0 --port 8000
"""
