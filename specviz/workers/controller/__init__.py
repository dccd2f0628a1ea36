"""Controller — command/event protocol and the generation worker."""

from specviz.workers.controller.protocol import parse_command
from specviz.workers.controller.worker import GenerationWorker

__all__ = [
    "GenerationWorker",
    "parse_command",
]
