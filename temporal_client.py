"""Temporal client factory.

Creates connections to a Temporal server (self-hosted or Temporal Cloud)
using settings from the environment.
"""

import os
from typing import Union
from pathlib import Path

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).resolve().parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

from temporalio.client import Client
from temporalio.service import TLSConfig


DEFAULT_ENDPOINT = "localhost:7233"


async def get_temporal_client() -> Client:
    """Create and return a Temporal client.

    Reads configuration from environment variables:
    - TEMPORAL_ENDPOINT: host:port (default: localhost:7233)
    - TEMPORAL_NAMESPACE: Namespace (default: "default")
    - TEMPORAL_API_KEY: API key for Temporal Cloud (enables TLS)
    - TEMPORAL_CERT_PATH / TEMPORAL_KEY_PATH: client certificate and key for mTLS

    Returns:
        Connected Temporal client
    """
    endpoint = os.getenv("TEMPORAL_ENDPOINT", DEFAULT_ENDPOINT)
    namespace = os.getenv("TEMPORAL_NAMESPACE", "default")
    api_key = os.getenv("TEMPORAL_API_KEY")
    cert_path = os.getenv("TEMPORAL_CERT_PATH")
    key_path = os.getenv("TEMPORAL_KEY_PATH")

    # A local dev server needs neither TLS nor credentials
    if not api_key and not cert_path:
        return await Client.connect(endpoint, namespace=namespace)

    tls: Union[bool, TLSConfig] = True
    if cert_path:
        if not key_path:
            raise ValueError("TEMPORAL_KEY_PATH must be set together with TEMPORAL_CERT_PATH")
        tls = TLSConfig(
            client_cert=Path(cert_path).read_bytes(),
            client_private_key=Path(key_path).read_bytes(),
        )

    return await Client.connect(
        endpoint,
        namespace=namespace,
        tls=tls,
        api_key=api_key,
    )
