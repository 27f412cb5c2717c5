"""Vertex AI client wrapper using google-genai SDK.

Provides location-aware clients for Google Generative AI in Vertex AI mode.
Authentication is handled automatically via Application Default Credentials (ADC).

Usage:
    from templatepipe.services.vertex_client import get_vertex_client

    client = get_vertex_client()                    # default location
    client = get_vertex_client(location="global")   # global endpoint
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from google import genai

from templatepipe.config import settings

# Load .env for GOOGLE_APPLICATION_CREDENTIALS (ADC)
load_dotenv(Path(__file__).resolve().parent.parent.parent.parent / ".env")

# Per-location client cache
_clients: dict[str, genai.Client] = {}


def get_vertex_client(location: str | None = None) -> genai.Client:
    """Get or create a Vertex AI client for the given location.

    Args:
        location: GCP region (e.g., "us-central1", "global").
                  Defaults to settings.google_cloud.location.

    Returns:
        genai.Client: Configured client instance for Vertex AI

    Raises:
        ValueError: If google_cloud.project_id is not configured.
    """
    loc = location or settings.google_cloud.location
    project_id = settings.google_cloud.project_id
    if not project_id:
        raise ValueError(
            "google_cloud.project_id is not configured "
            "(set TEMPLATEPIPE_GOOGLE_CLOUD__PROJECT_ID)"
        )

    if loc not in _clients:
        os.environ["GOOGLE_GENAI_USE_VERTEXAI"] = "true"
        os.environ["GOOGLE_CLOUD_PROJECT"] = project_id

        _clients[loc] = genai.Client(
            vertexai=True,
            project=project_id,
            location=loc,
        )

    return _clients[loc]
