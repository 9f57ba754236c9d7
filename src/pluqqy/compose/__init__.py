"""Pipeline composition: pipelines in, a single Markdown document out."""

from pluqqy.compose.composer import Composition, PipelineComposer, compose_component
from pluqqy.compose.output import resolve_output_path, write_output
from pluqqy.compose.tokens import count_tokens, format_token_count, token_limit_status

__all__ = [
    "Composition",
    "PipelineComposer",
    "compose_component",
    "count_tokens",
    "format_token_count",
    "resolve_output_path",
    "token_limit_status",
    "write_output",
]
