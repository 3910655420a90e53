#!/usr/bin/env python3
"""Print ingestion, search and cache limits from config. Run from repo root: python scripts/print_limits.py"""
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from multimodal_rag.core.config import settings


def main():
    """Print the effective limits (MAX_FILE_MB, CHUNK_SIZE, MIN_SCORE, cache TTLs, rate limit)."""
    print("Ingestion limits")
    print("----------------")
    print(f"  MAX_FILE_MB                      = {settings.max_file_mb} MB (max size per upload)")
    print(f"  MAX_IMAGE_BYTES                  = {settings.max_image_bytes} (max size per image)")
    print(f"  MAX_CONCURRENT_UPLOADS_PER_USER  = {settings.max_concurrent_uploads_per_user}")
    print(f"  CHUNK_SIZE / CHUNK_OVERLAP       = {settings.chunk_size} / {settings.chunk_overlap} chars")
    print(f"  PDF_RENDER_DPI                   = {settings.pdf_render_dpi}")
    print("")
    print("Search limits")
    print("-------------")
    print(f"  MAX_TEXT_RESULTS / MAX_IMAGE_RESULTS = {settings.max_text_results} / {settings.max_image_results}")
    print(f"  MAX_MULTIMODAL_RESULTS           = {settings.max_multimodal_results} (per modality in mode=all)")
    print(f"  Query length                     = {settings.min_query_length}..{settings.max_query_length} chars")
    print(f"  MIN_SCORE                        = {settings.min_score}")
    print("")
    print("Cache")
    print("-----")
    print(f"  CACHE_BACKEND                    = {settings.cache_backend} (enabled={settings.cache_enabled})")
    print(f"  CACHE_TTL_SECONDS                = {settings.cache_ttl_seconds}")
    print(f"  SESSION_TTL_SECONDS              = {settings.session_ttl_seconds}")
    print(f"  Rate limit                       = {settings.rate_limit_requests} requests / {settings.rate_limit_window_seconds} s (per client IP)")


if __name__ == "__main__":
    main()
