"""
Configuration for Chapter Case File Service
===========================================

Environment variables:
- STORAGE_BACKEND: local|s3 (default: local)
- STORAGE_ROOT: Root directory for the local blob store (default: ./storage)
- STORAGE_BASE_URL: Public base URL used in signed links for local files
- SIGNING_SECRET: Secret for local signed URL tokens
- SIGNED_URL_TTL_SECONDS: Lifetime of signed signature/photo URLs (default: 300)
- S3_BUCKET / S3_ENDPOINT / S3_ACCESS_KEY / S3_SECRET_KEY / S3_REGION
- PREVIEW_DIR: Where disposable preview PDFs are written
- WORK_DIR: Scratch directory for issued renders before upload
- RENDERER_FONT_PATH: TTF font registered for PDF output (needs Devanagari glyphs,
  e.g. Noto Sans Devanagari from fonts-noto-core)
- PREVIEW_MAX_AGE_SECONDS: Age after which preview PDFs are removed (default: 3600)

DATABASE_URL is read by chapter_cases.db.session.
"""

import os
from typing import Optional, List
from pydantic_settings import BaseSettings
from functools import lru_cache


DEFAULT_SIGNING_SECRET = "change-me"


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Blob storage
    storage_backend: str = "local"  # local | s3
    storage_root: str = "./storage"
    storage_base_url: str = "http://localhost:8000/files"
    signing_secret: str = DEFAULT_SIGNING_SECRET
    signed_url_ttl_seconds: int = 300

    # S3 (used when storage_backend=s3)
    s3_bucket: Optional[str] = None
    s3_endpoint: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_region: Optional[str] = None

    # Case files
    casefile_prefix: str = "casefiles"
    preview_dir: str = "./storage/previews"
    work_dir: str = "./storage/work"
    preview_max_age_seconds: int = 3600

    # Rendering
    # Must cover Devanagari; Marathi names and dates are drawn with it
    renderer_font_path: str = "/usr/share/fonts/truetype/noto/NotoSansDevanagari-Regular.ttf"

    # Page data
    unknown_station_label: str = "Unknown"

    # Service info
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"

    def validate_storage_config(self) -> List[str]:
        """Validate storage configuration, return list of warnings"""
        warnings = []

        if self.storage_backend == "s3":
            if not self.s3_bucket:
                warnings.append("STORAGE_BACKEND=s3 but S3_BUCKET not set")
            if not (self.s3_access_key and self.s3_secret_key):
                warnings.append("STORAGE_BACKEND=s3 without explicit S3 credentials (using boto3 default chain)")

        elif self.storage_backend == "local":
            if self.signing_secret == DEFAULT_SIGNING_SECRET:
                warnings.append("SIGNING_SECRET is the default value; signed URLs are forgeable")

        else:
            warnings.append(f"Unknown STORAGE_BACKEND={self.storage_backend!r}, expected local|s3")

        if self.signed_url_ttl_seconds <= 0:
            warnings.append("SIGNED_URL_TTL_SECONDS must be positive")

        return warnings

    def validate_renderer_config(self) -> List[str]:
        """Validate renderer configuration, return list of warnings"""
        warnings = []
        if not self.renderer_font_path:
            warnings.append("RENDERER_FONT_PATH not set; Marathi text will not render")
        elif not os.path.exists(self.renderer_font_path):
            warnings.append(f"RENDERER_FONT_PATH={self.renderer_font_path} does not exist; Marathi text will not render")
        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
