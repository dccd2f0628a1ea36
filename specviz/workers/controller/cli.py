"""Command-line controller for the speculative decoding worker.

Runs a prompt to completion, printing every draft/verify/reject/sample
update as it streams::

    specviz --prompt "tell me a story" --lookahead 4 --seed 0

or drives the worker interactively from stdin::

    specviz --interactive
    > start what is 2+2?
    > step
    > resume
    > pause
    > quit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

from specviz.core.config import (
    DraftBackendConfig,
    GenerationConfig,
    TargetBackendConfig,
    load_config_file,
)
from specviz.core.errors import InferenceError
from specviz.core.telemetry import TelemetryLogger
from specviz.workers.controller.protocol import (
    ModelLoadProgress,
    PauseCommand,
    ResumeCommand,
    SessionDone,
    SessionError,
    SessionStarted,
    ShutdownCommand,
    StageUpdate,
    StartCommand,
    StepCommand,
    StopCommand,
    WorkerEvent,
    WorkerReady,
)
from specviz.workers.controller.worker import GenerationWorker
from specviz.workers.engine.state_machine import SpeculativeStateMachine
from specviz.workers.inference.backend import HuggingFaceBackend, ModelRunner
from specviz.workers.inference.tokenizer import ChatTokenizer

logger = logging.getLogger(__name__)

_STAGE_LABELS = {
    "draft": "draft",
    "verify": "accept",
    "reject": "reject",
    "sample": "sample",
}


def build_worker(
    draft_config: DraftBackendConfig,
    target_config: TargetBackendConfig,
    gen_config: GenerationConfig,
    telemetry: TelemetryLogger | None = None,
) -> tuple[GenerationWorker, list[HuggingFaceBackend]]:
    """Wire backends, tokenizer, state machine and worker together.

    Models are not loaded here; call :meth:`GenerationWorker.load_models`
    with the returned backends.
    """
    draft_backend = HuggingFaceBackend(draft_config, component="draft")
    target_backend = HuggingFaceBackend(target_config, component="target")

    tokenizer = ChatTokenizer(
        gen_config.tokenizer_model or draft_config.model_name,
        eot_token_id=gen_config.eot_token_id,
    )
    machine = SpeculativeStateMachine(
        draft=ModelRunner(draft_backend, "draft", draft_config.temperature, telemetry),
        target=ModelRunner(target_backend, "target", target_config.temperature, telemetry),
        config=gen_config,
        eot_token_id=tokenizer.eot_token_id,
        telemetry=telemetry,
    )
    worker = GenerationWorker(machine, tokenizer, gen_config)
    return worker, [draft_backend, target_backend]


def format_event(event: WorkerEvent) -> str | None:
    """Render an event as one line of terminal output."""
    if isinstance(event, StageUpdate):
        return f"  [{event.session_id}] {_STAGE_LABELS[event.stage]:>6} │ {event.token!r}"
    if isinstance(event, SessionDone):
        return f"  [{event.session_id}] done ({event.reason}, {event.generated_tokens} tokens)"
    if isinstance(event, SessionError):
        if event.session_id is None:
            return f"  error: {event.message}"
        return f"  [{event.session_id}] error: {event.message}"
    if isinstance(event, ModelLoadProgress):
        return f"  loading {event.component}: {event.percent_complete:.1f}%"
    if isinstance(event, WorkerReady):
        return "  models ready"
    if isinstance(event, SessionStarted):
        return f"  [{event.session_id}] started"
    return None


def _print_summary(done: SessionDone) -> None:
    print(f"\n{'=' * 60}")
    print("Generated Output:")
    print(f"{'=' * 60}")
    print(done.text)
    print(f"\n{'=' * 60}")
    print("Speculation Metrics:")
    print(f"{'=' * 60}")
    stats = done.stats
    print(f"  Tokens generated:        {done.generated_tokens}")
    print(f"  Draft tokens proposed:   {int(stats.get('drafted', 0))}")
    print(f"  Acceptance rate:         {stats.get('acceptance_rate', 0.0) * 100:.1f}%")
    print(f"  Target passes:           {int(stats.get('target_passes', 0))}")
    print(f"  Tokens per target pass:  {stats.get('tokens_per_target_pass', 0.0):.2f}")


def _print_timings(telemetry: TelemetryLogger) -> None:
    summary = telemetry.summary()
    if not summary:
        return
    print(f"\n{'=' * 60}")
    print("Timing:")
    print(f"{'=' * 60}")
    for operation, agg in sorted(summary.items()):
        print(f"  {operation + ':':<24} {int(agg['count']):>5} x {agg['mean_ms']:8.2f} ms")


async def _shutdown(worker: GenerationWorker, serve_task: asyncio.Task[None]) -> None:
    await worker.submit(ShutdownCommand())
    await serve_task


async def _run_prompt(worker: GenerationWorker, backends: list[HuggingFaceBackend], prompt: str) -> None:
    serve_task = asyncio.create_task(worker.serve())
    try:
        await worker.load_models(*backends)
    except InferenceError as exc:
        print(f"  error: {exc}", file=sys.stderr, flush=True)
        await _shutdown(worker, serve_task)
        raise SystemExit(1) from exc
    await worker.submit(StartCommand(prompt=prompt, session_id=1, paused=False))

    async for event in worker.events():
        line = format_event(event)
        if line is not None:
            print(line, flush=True)
        if isinstance(event, SessionDone) and event.session_id == 1:
            _print_summary(event)
            break
        if isinstance(event, SessionError) and event.session_id == 1:
            break

    await _shutdown(worker, serve_task)


def parse_interactive_line(line: str, next_session_id: int) -> Any:
    """Translate one line of interactive input into a command, or ``None``."""
    verb, _, rest = line.strip().partition(" ")
    verb = verb.lower()
    if verb == "start" and rest.strip():
        return StartCommand(prompt=rest.strip(), session_id=next_session_id)
    simple = {
        "pause": PauseCommand,
        "resume": ResumeCommand,
        "step": StepCommand,
        "stop": StopCommand,
        "quit": ShutdownCommand,
        "exit": ShutdownCommand,
    }
    factory = simple.get(verb)
    return factory() if factory is not None else None


async def _run_interactive(worker: GenerationWorker, backends: list[HuggingFaceBackend]) -> None:
    serve_task = asyncio.create_task(worker.serve())

    async def _print_events() -> None:
        async for event in worker.events():
            line = format_event(event)
            if line is not None:
                print(line, flush=True)

    printer = asyncio.create_task(_print_events())
    try:
        await worker.load_models(*backends)
    except InferenceError as exc:
        await _shutdown(worker, serve_task)
        printer.cancel()
        raise SystemExit(1) from exc
    print("commands: start <prompt> | pause | resume | step | stop | quit", flush=True)

    session_id = 0
    while not serve_task.done():
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            command: Any = ShutdownCommand()
        else:
            command = parse_interactive_line(line, session_id + 1)
            if command is None:
                print(f"  unrecognized: {line.strip()!r}", flush=True)
                continue
        if isinstance(command, StartCommand):
            session_id = command.session_id
        await worker.submit(command)
        if isinstance(command, ShutdownCommand):
            break

    await serve_task
    printer.cancel()


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="SpecViz — step through speculative decoding with a draft and target model",
    )
    parser.add_argument("--prompt", type=str, default=None, help="Prompt to run to completion")
    parser.add_argument(
        "--interactive",
        action="store_true",
        help="Read start/pause/resume/step/stop/quit commands from stdin",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML or JSON config file. CLI args override file values.",
    )
    parser.add_argument("--draft-model", type=str, default=None, help="Draft model id or path")
    parser.add_argument("--target-model", type=str, default=None, help="Target model id or path")
    parser.add_argument("--device", type=str, default=None, help="Torch device for both models")
    parser.add_argument("--lookahead", type=int, default=None, help="Tokens drafted per block")
    parser.add_argument("--max-new-tokens", type=int, default=None, help="Generation budget")
    parser.add_argument("--seed", type=int, default=None, help="Seed for reproducible sampling")
    parser.add_argument("--system-prompt", type=str, default=None, help="Optional system preamble")
    parser.add_argument(
        "--telemetry-output",
        type=str,
        default=None,
        help="Path to export telemetry JSON",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.prompt is None and not args.interactive:
        parser.error("one of --prompt or --interactive is required")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(name)-30s | %(levelname)-7s | %(message)s",
    )

    file_cfg: dict[str, Any] = load_config_file(args.config) if args.config else {}
    draft_kw: dict[str, Any] = dict(file_cfg.get("draft", {}))
    target_kw: dict[str, Any] = dict(file_cfg.get("target", {}))
    gen_kw: dict[str, Any] = dict(file_cfg.get("generation", {}))

    if args.draft_model is not None:
        draft_kw["model_name"] = args.draft_model
    if args.target_model is not None:
        target_kw["model_name"] = args.target_model
    if args.device is not None:
        draft_kw["device"] = args.device
        target_kw["device"] = args.device
    if args.lookahead is not None:
        gen_kw["lookahead"] = args.lookahead
    if args.max_new_tokens is not None:
        gen_kw["max_new_tokens"] = args.max_new_tokens
    if args.seed is not None:
        gen_kw["seed"] = args.seed
    if args.system_prompt is not None:
        gen_kw["system_prompt"] = args.system_prompt

    telemetry = TelemetryLogger(service_name="specviz-cli")
    worker, backends = build_worker(
        DraftBackendConfig(**draft_kw),
        TargetBackendConfig(**target_kw),
        GenerationConfig(**gen_kw),
        telemetry=telemetry,
    )

    if args.interactive:
        asyncio.run(_run_interactive(worker, backends))
    else:
        asyncio.run(_run_prompt(worker, backends, args.prompt))
        _print_timings(telemetry)

    if args.telemetry_output:
        telemetry.export(args.telemetry_output)
        print(f"\nTelemetry exported to: {args.telemetry_output}")


if __name__ == "__main__":
    main()
