from highlight_sync.di.container import (
    build_orchestrator,
    build_readwise_client,
    build_upload_pipeline,
    configure_logging,
)

__all__ = [
    "build_orchestrator",
    "build_readwise_client",
    "build_upload_pipeline",
    "configure_logging",
]
