from __future__ import annotations

from datetime import datetime

from imgpress.core.models import ConvertedArtifact


def format_file_size(byte_count: int) -> str:
    kilobytes = byte_count / 1024
    if kilobytes < 1024:
        return f"{kilobytes:.2f} KB"
    return f"{kilobytes / 1024:.2f} MB"


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def format_savings(artifact: ConvertedArtifact) -> str:
    return f"{artifact.savings_percent:.1f}%"


def describe_artifact(artifact: ConvertedArtifact) -> str:
    return (
        f"{format_file_size(artifact.original_size_bytes)} → {format_file_size(artifact.output_size_bytes)}"
        f"  ({format_savings(artifact)} saved)"
    )
