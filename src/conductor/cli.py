"""CLI commands for refining specs and planning sprints with Sprint Conductor."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from pydantic import ValidationError

from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    default_config,
    load_config,
    resolve_path,
    write_config,
)
from .conductor import (
    ConductorError,
    format_conductor_output,
    format_plan_section,
    load_knowledge_context,
    run_conductor_pipeline,
)
from .exchange_log import ExchangeLogger
from .models import LLMClient, LLMClientError, OfflineLLMClient, ResponsesClient
from .models.llm_client import AttemptLogger
from .models.router import ModelRouter, TaskType
from .patterns.evaluator_optimizer import EvalOptConfig, format_eval_opt_result, run_eval_opt_loop
from .planning.coverage import check_data_flow_coverage, check_test_coverage
from .planning.decomposition import DecompositionError, DecompositionValidationError, decompose
from .planning.estimation import (
    DEFAULT_CALIBRATION,
    EstimationDataPoint,
    add_data_point,
    get_calibration_factor,
    infer_complexity,
    infer_task_type,
    load_estimation_data,
    predict_task_duration,
    train_estimation_model,
)
from .planning.scheduler import build_execution_plan, calibrate_estimate
from .planning.schemas import Decomposition
from .planning.task_size import (
    auto_split_oversized_tasks,
    find_leader_only_tasks,
    format_agent_dispatch_section,
    validate_task_file_counts,
)

APP_HELP = "Sprint Conductor CLI entry point."

LOGGER = logging.getLogger(__name__)

app = typer.Typer(help=APP_HELP)


@app.callback()
def main(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    """Configure logging before any command runs."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {log_level}", param_hint="--log-level")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load_config(config: Optional[str]) -> tuple[Dict[str, Any], Path]:
    """Load the configuration, falling back to defaults when no file is present."""
    if config is None:
        config_path = Path(DEFAULT_CONFIG_NAME)
        if not config_path.exists():
            return default_config(), Path.cwd()
    else:
        config_path = Path(config)
        if not config_path.exists():
            raise typer.BadParameter(f"Config file not found: {config_path}", param_hint="--config")

    try:
        data = load_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    return data, config_path.resolve().parent


def _build_client(config: Dict[str, Any], *, use_remote: bool) -> LLMClient:
    """Select either the Responses API client or the offline stub."""
    models_cfg = config.get("models") or {}
    model_name = str(models_cfg.get("default", "gpt-5-mini"))
    model_name_key = model_name.lower()
    offline_model = model_name_key == "offline" or model_name_key.endswith("-offline")

    if use_remote and not offline_model:
        typer.echo(f"Using Responses API client ({model_name}).")
        client_kwargs: Dict[str, Any] = {}
        timeout_value = models_cfg.get("timeout")
        if isinstance(timeout_value, (int, float)) and timeout_value > 0:
            client_kwargs["timeout"] = float(timeout_value)
        max_attempts_value = models_cfg.get("max_attempts")
        if isinstance(max_attempts_value, int) and max_attempts_value > 0:
            client_kwargs["max_attempts"] = max_attempts_value
        retry_delay_value = models_cfg.get("retry_delay")
        if isinstance(retry_delay_value, (int, float)) and retry_delay_value >= 0:
            client_kwargs["retry_delay"] = float(retry_delay_value)
        base_url_value = models_cfg.get("base_url")
        if isinstance(base_url_value, str) and base_url_value.strip():
            client_kwargs["base_url"] = base_url_value.strip()
        api_key_value = models_cfg.get("api_key")
        if isinstance(api_key_value, str) and api_key_value.strip():
            client_kwargs["api_key"] = api_key_value.strip()
        try:
            return ResponsesClient(model=model_name, **client_kwargs)
        except ValueError as error:
            if "api key" in str(error).lower():
                typer.echo(
                    "No API key given. Set OPENAI_API_KEY or CONDUCTOR_API_KEY, "
                    "or re-run with --no-use-remote to use the offline stub."
                )
            else:
                typer.echo(f"Failed to initialise Responses API client: {error}")
            raise typer.Exit(code=1)

    if use_remote and offline_model:
        typer.echo(f"Model '{model_name}' is offline-only; using offline stub client.")
    else:
        typer.echo("Using offline stub client.")
    return OfflineLLMClient()


def _exchange_logger(config: Dict[str, Any], base: Path, enabled: bool) -> Optional[AttemptLogger]:
    if not enabled:
        return None
    logs_root = resolve_path(config, "logs", base)
    if logs_root is None:
        return None
    return ExchangeLogger(logs_root).record


def _load_decomposition(path: Path) -> Decomposition:
    """Read a decomposition JSON file (camelCase or snake_case keys)."""
    if not path.exists():
        raise typer.BadParameter(f"Decomposition file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as error:
        typer.echo(f"Failed to parse decomposition JSON: {error}")
        raise typer.Exit(code=1) from error
    try:
        return Decomposition.model_validate(payload)
    except ValidationError as error:
        typer.echo(f"Invalid decomposition: {error}")
        raise typer.Exit(code=1) from error


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file to create.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing configuration file.",
    ),
) -> None:
    """Write the default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}. Use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, default_config())
    typer.echo(f"Created configuration at {config_path}.")


@app.command()
def conduct(
    feature: str = typer.Argument(..., help="Feature description to plan."),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    context: Optional[str] = typer.Option(
        None,
        "--context",
        help="Additional context: requirements, constraints, files to modify.",
    ),
    threshold: Optional[float] = typer.Option(
        None,
        "--threshold",
        "-t",
        min=0,
        max=10,
        help="Spec quality threshold (defaults to eval_opt.quality_threshold).",
    ),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the Responses API instead of the offline stub (requires API key).",
    ),
    log_exchanges: bool = typer.Option(
        True,
        "--log-exchanges/--no-log-exchanges",
        help="Write per-call JSON logs under paths.logs/llm.",
    ),
    resume: bool = typer.Option(
        True,
        "--resume/--no-resume",
        help="Continue from the last saved stage of an interrupted run for the same feature.",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the markdown report to this file instead of stdout.",
    ),
) -> None:
    """Refine a spec for FEATURE, decompose it into tasks and plan the waves."""
    if not feature.strip():
        raise typer.BadParameter("Feature description must not be empty.", param_hint="FEATURE")
    config_data, base = _load_config(config)
    client = _build_client(config_data, use_remote=use_remote)

    try:
        result = run_conductor_pipeline(
            feature,
            client=client,
            config=config_data,
            context=context,
            quality_threshold=threshold,
            base_dir=base,
            attempt_logger=_exchange_logger(config_data, base, log_exchanges),
            resume=resume,
        )
    except (ConductorError, DecompositionError, DecompositionValidationError) as error:
        typer.echo(f"Sprint conductor failed: {error}")
        raise typer.Exit(code=1) from error
    except LLMClientError as error:
        typer.echo(f"Model call failed: {error}")
        raise typer.Exit(code=1) from error

    report = format_conductor_output(result)
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(report, encoding="utf-8")
        typer.echo(f"Wrote plan to {output}.")
    else:
        typer.echo(report)


@app.command()
def refine(
    prompt: str = typer.Argument(..., help="Generation prompt describing what to produce."),
    criterion: List[str] = typer.Option(
        None,
        "--criterion",
        "-k",
        help="Evaluation criterion (repeatable).",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    threshold: float = typer.Option(7.0, "--threshold", "-t", min=0, max=10, help="Minimum score to accept."),
    max_iterations: int = typer.Option(3, "--max-iterations", "-n", min=1, max=10, help="Maximum refinement iterations."),
    generator: TaskType = typer.Option(TaskType.SPOT_CHECK, "--generator", help="Task type routed for generation."),
    evaluator: TaskType = typer.Option(TaskType.CONVERSATION, "--evaluator", help="Task type routed for evaluation."),
    thinking: bool = typer.Option(False, "--thinking/--no-thinking", help="Give the evaluator extra reasoning budget."),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the Responses API instead of the offline stub (requires API key).",
    ),
) -> None:
    """Generate content and iterate until it scores above the threshold."""
    criteria = [item for item in (criterion or []) if item.strip()]
    if not criteria:
        raise typer.BadParameter("At least one --criterion is required.", param_hint="--criterion")
    config_data, base = _load_config(config)
    client = _build_client(config_data, use_remote=use_remote)
    eval_cfg = config_data.get("eval_opt") or {}

    result = run_eval_opt_loop(
        prompt,
        EvalOptConfig(
            evaluation_criteria=criteria,
            generator_task_type=generator,
            evaluator_task_type=evaluator,
            quality_threshold=threshold,
            max_iterations=max_iterations,
            enable_thinking=thinking,
            thinking_budget=int(eval_cfg.get("thinking_budget", 2048)),
        ),
        client=client,
        router=ModelRouter.from_config(config_data),
        attempt_logger=_exchange_logger(config_data, base, True),
    )
    typer.echo(format_eval_opt_result(result))
    if result.errors and not result.final_output:
        raise typer.Exit(code=1)


@app.command()
def plan(
    decomposition_file: Path = typer.Argument(..., help="JSON file holding a task decomposition."),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    split: bool = typer.Option(True, "--split/--no-split", help="Split tasks that exceed the file limit."),
    file_limit: Optional[int] = typer.Option(None, "--file-limit", min=2, help="Maximum files per task."),
    calibration: Optional[float] = typer.Option(
        None,
        "--calibration",
        min=0,
        help="Calibration factor (defaults to the learned or configured factor).",
    ),
) -> None:
    """Build an execution plan from an existing decomposition."""
    config_data, base = _load_config(config)
    planning_cfg = config_data.get("planning") or {}
    limit = file_limit or int(planning_cfg.get("file_limit", 5))
    decomposition = _load_decomposition(decomposition_file)

    violations = validate_task_file_counts(decomposition, limit)
    if violations and split:
        typer.echo(f"Split {len(violations)} oversized task(s).")
        decomposition = auto_split_oversized_tasks(decomposition, limit)

    factor = calibration
    if factor is None:
        factor = get_calibration_factor(
            resolve_path(config_data, "estimation", base),
            default=float(planning_cfg.get("default_calibration", 0.5)),
        )

    try:
        execution_plan = build_execution_plan(decomposition, factor)
    except DecompositionValidationError as error:
        typer.echo(f"Invalid decomposition: {error}")
        raise typer.Exit(code=1) from error

    typer.echo("\n".join(format_plan_section(execution_plan)))
    typer.echo(format_agent_dispatch_section(decomposition.tasks, limit))


@app.command()
def check(
    decomposition_file: Path = typer.Argument(..., help="JSON file holding a task decomposition."),
    file_limit: int = typer.Option(5, "--file-limit", min=1, help="Maximum files per task."),
) -> None:
    """Report size violations and coverage advisories for a decomposition."""
    decomposition = _load_decomposition(decomposition_file)
    findings = 0

    for violation in validate_task_file_counts(decomposition, file_limit):
        findings += 1
        typer.echo(
            f'- Task #{violation.task_id} "{violation.task_title}": {violation.file_count} files '
            f"(max {violation.max_files})"
        )
    for task in find_leader_only_tasks(decomposition):
        findings += 1
        typer.echo(f'- Task #{task.id} "{task.title}": no files listed (leader-only)')
    for warning in check_data_flow_coverage(decomposition):
        findings += 1
        typer.echo(f"- {warning.message}")
    test_warning = check_test_coverage(decomposition)
    if test_warning:
        findings += 1
        typer.echo(f"- {test_warning}")

    if findings == 0:
        typer.echo("No issues found.")


@app.command("decompose")
def decompose_command(
    spec_file: Path = typer.Argument(..., help="Markdown or text file holding a refined spec."),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
    parallel: Optional[bool] = typer.Option(
        None,
        "--parallel/--no-parallel",
        help="Ask for parallel-friendly tasks (defaults to planning.prefer_parallel).",
    ),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the Responses API instead of the offline stub (requires API key).",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the decomposition JSON to this file instead of stdout.",
    ),
) -> None:
    """Break an existing spec into tasks and emit the decomposition as JSON."""
    if not spec_file.exists():
        raise typer.BadParameter(f"Spec file not found: {spec_file}", param_hint="SPEC_FILE")
    spec_text = spec_file.read_text(encoding="utf-8")
    if not spec_text.strip():
        raise typer.BadParameter("Spec file is empty.", param_hint="SPEC_FILE")
    config_data, base = _load_config(config)
    planning_cfg = config_data.get("planning") or {}
    client = _build_client(config_data, use_remote=use_remote)
    knowledge = load_knowledge_context(resolve_path(config_data, "knowledge", base))

    try:
        outcome = decompose(
            spec_text,
            client=client,
            router=ModelRouter.from_config(config_data),
            task_type=TaskType(planning_cfg.get("decompose_task_type", TaskType.SPOT_CHECK.value)),
            knowledge_hint=knowledge.decompose_hint(),
            prefer_parallel=bool(planning_cfg.get("prefer_parallel", False)) if parallel is None else parallel,
            attempt_logger=_exchange_logger(config_data, base, True),
        )
    except LLMClientError as error:
        typer.echo(f"Model call failed: {error}")
        raise typer.Exit(code=1) from error
    if outcome.decomposition is None:
        typer.echo(f"Failed to parse task decomposition from {outcome.model} response.")
        raise typer.Exit(code=1)

    rendered = outcome.decomposition.model_dump_json(by_alias=True, indent=2)
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(rendered + "\n", encoding="utf-8")
        typer.echo(
            f"Wrote {len(outcome.decomposition.tasks)} task(s) to {output} "
            f"(cost ${outcome.cost_usd:.6f})."
        )
    else:
        typer.echo(rendered)


def _estimation_path(config_data: Dict[str, Any], base: Path) -> Path:
    path = resolve_path(config_data, "estimation", base)
    if path is None:
        typer.echo("No estimation store configured; set paths.estimation.")
        raise typer.Exit(code=1)
    return path


@app.command()
def record(
    title: str = typer.Argument(..., help="Title of the completed task or sprint."),
    estimated: float = typer.Option(..., "--estimated", min=0, help="Estimated minutes."),
    actual: float = typer.Option(..., "--actual", min=0, help="Actual minutes taken."),
    phase: str = typer.Option("unplanned", "--phase", help="Sprint phase the work belonged to."),
    files: int = typer.Option(0, "--files", min=0, help="Number of files touched."),
    tasks: int = typer.Option(1, "--tasks", min=1, help="Task count, used to infer complexity."),
    task_type: Optional[str] = typer.Option(None, "--type", help="Task type (inferred from the title when omitted)."),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Record an actual duration so later plans use a learned calibration."""
    config_data, base = _load_config(config)
    path = _estimation_path(config_data, base)
    point = EstimationDataPoint(
        sprint_phase=phase,
        task_type=task_type or infer_task_type(title),
        file_count=files,
        estimated_minutes=estimated,
        actual_minutes=actual,
        complexity=infer_complexity(tasks),
        date=datetime.now(timezone.utc).isoformat(),
    )
    add_data_point(path, point)
    points = load_estimation_data(path)
    typer.echo(f"Recorded {point.task_type} ({point.complexity}) data point; {len(points)} stored.")
    model = train_estimation_model(points)
    if model is None:
        typer.echo("Not enough data yet; plans keep the default calibration.")
    else:
        typer.echo(f"Learned calibration factor: {model.overall_calibration}")


@app.command()
def estimate(
    title: str = typer.Argument(..., help="Title of the planned task."),
    minutes: float = typer.Option(..., "--minutes", min=0, help="Raw estimate in minutes."),
    files: int = typer.Option(1, "--files", min=0, help="Number of files the task touches."),
    tasks: int = typer.Option(1, "--tasks", min=1, help="Task count, used to infer complexity."),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the configuration file.",
    ),
) -> None:
    """Predict a task's duration from recorded history."""
    config_data, base = _load_config(config)
    model = train_estimation_model(load_estimation_data(_estimation_path(config_data, base)))
    if model is None:
        planning_cfg = config_data.get("planning") or {}
        factor = float(planning_cfg.get("default_calibration", DEFAULT_CALIBRATION))
        typer.echo(f"Predicted: {calibrate_estimate(minutes, factor)} minutes (default calibration x{factor})")
        return
    prediction = predict_task_duration(model, minutes, infer_task_type(title), infer_complexity(tasks), files)
    typer.echo(
        f"Predicted: {prediction.predicted_minutes} minutes "
        f"(confidence {prediction.confidence}, {model.data_point_count} data points)"
    )


if __name__ == "__main__":
    app()
