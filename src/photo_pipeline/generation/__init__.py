"""Generation API collaborators."""

from photo_pipeline.generation.client import (
    EchoGenerationClient,
    GenerationClient,
    GeneratedArtifact,
    HttpGenerationClient,
)

__all__ = [
    "EchoGenerationClient",
    "GeneratedArtifact",
    "GenerationClient",
    "HttpGenerationClient",
]
