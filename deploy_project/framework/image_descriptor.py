"""Image descriptors parsed from (multi-stage) Dockerfiles."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

from deploy_project.framework.descriptors import BuildStage, ImageDescriptor, WorkloadDescriptor
from deploy_project.framework.errors import Violation
from deploy_project.framework.validation import ValidationResult

_FROM_RE = re.compile(r"^(?P<image>\S+)(?:\s+[Aa][Ss]\s+(?P<name>\S+))?$")
_PORT_RE = re.compile(r"^(?P<port>\d+)(?:/(?:tcp|udp))?$")


@dataclass
class _StageDraft:
    index: int
    base_image: str
    name: str | None
    workdir: str | None = None
    commands: list[str] = field(default_factory=list)
    copies_from: list[str] = field(default_factory=list)
    exposed: list[str] = field(default_factory=list)
    entrypoint: list[str] | None = None
    cmd: list[str] | None = None

    def freeze(self) -> BuildStage:
        return BuildStage(
            base_image=self.base_image,
            name=self.name,
            workdir=self.workdir,
            commands=tuple(self.commands),
            copies_from=tuple(self.copies_from),
        )


def _logical_lines(text: str) -> list[tuple[int, str]]:
    lines: list[tuple[int, str]] = []
    buffer: list[str] = []
    start = 0
    for number, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not buffer and (not stripped or stripped.startswith("#")):
            continue
        if not buffer:
            start = number
        if stripped.endswith("\\"):
            buffer.append(stripped[:-1].strip())
            continue
        buffer.append(stripped)
        lines.append((start, " ".join(part for part in buffer if part)))
        buffer = []
    if buffer:
        lines.append((start, " ".join(part for part in buffer if part)))
    return lines


def _exec_form(args: str) -> list[str] | None:
    if args.startswith("["):
        try:
            parsed = json.loads(args)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
            return None
        return parsed
    return ["/bin/sh", "-c", args]


def parse_dockerfile(text: str) -> ValidationResult[ImageDescriptor]:
    """Parse Dockerfile text into an ImageDescriptor.

    The last stage is the runtime stage. The build stage is the first stage the
    runtime stage copies from, or the stage right before it when it copies from
    none.
    """

    violations: list[Violation] = []
    stages: list[_StageDraft] = []

    for line_no, line in _logical_lines(text or ""):
        instruction, _, args = line.partition(" ")
        keyword = instruction.upper()
        args = args.strip()

        if keyword == "FROM":
            match = _FROM_RE.match(args)
            if match is None:
                violations.append(Violation(f"line {line_no}", "FROM must be 'image [AS name]'", args))
                continue
            stages.append(_StageDraft(index=len(stages), base_image=match.group("image"), name=match.group("name")))
            continue
        if keyword == "ARG" and not stages:
            continue
        if not stages:
            violations.append(Violation(f"line {line_no}", "must follow a FROM instruction", line))
            continue

        stage = stages[-1]
        if keyword == "WORKDIR":
            stage.workdir = args
        elif keyword == "EXPOSE":
            stage.exposed.extend(args.split())
        elif keyword == "CMD":
            stage.cmd = _exec_form(args)
            if stage.cmd is None:
                violations.append(Violation("entryCommand", "CMD must be a JSON string array or shell form", args))
        elif keyword == "ENTRYPOINT":
            stage.entrypoint = _exec_form(args)
            if stage.entrypoint is None:
                violations.append(Violation("entryCommand", "ENTRYPOINT must be a JSON string array or shell form", args))
        else:
            if keyword in ("COPY", "ADD"):
                for token in args.split():
                    if token.startswith("--from="):
                        stage.copies_from.append(token[len("--from="):])
            stage.commands.append(f"{keyword} {args}".strip())

    if not stages:
        violations.append(Violation("<root>", "must contain at least one FROM instruction", None))
        return ValidationResult("ImageDescriptor", None, tuple(violations))

    for stage in stages:
        earlier = {s.name for s in stages[: stage.index] if s.name} | {str(s.index) for s in stages[: stage.index]}
        for source in stage.copies_from:
            if source not in earlier:
                violations.append(
                    Violation(f"stages[{stage.index}].copyFrom", "must name an earlier build stage", source)
                )

    runtime = stages[-1]
    exposed_port: int | None = None
    if len(runtime.exposed) != 1:
        violations.append(Violation("exposedPort", "runtime stage must expose exactly one port", runtime.exposed))
    else:
        match = _PORT_RE.match(runtime.exposed[0])
        port = int(match.group("port")) if match else 0
        if not 1 <= port <= 65535:
            violations.append(Violation("exposedPort", "must be a port in [1, 65535]", runtime.exposed[0]))
        else:
            exposed_port = port

    entry = list(runtime.entrypoint or []) + list(runtime.cmd or [])
    if not entry and not any(v.field == "entryCommand" for v in violations):
        violations.append(Violation("entryCommand", "runtime stage must declare CMD or ENTRYPOINT", None))

    if violations:
        return ValidationResult("ImageDescriptor", None, tuple(violations))

    build_stage: BuildStage | None = None
    if len(stages) > 1:
        by_ref = {s.name: s for s in stages if s.name} | {str(s.index): s for s in stages}
        source = by_ref.get(runtime.copies_from[0]) if runtime.copies_from else stages[-2]
        build_stage = (source or stages[-2]).freeze()

    descriptor = ImageDescriptor(
        runtime_stage=runtime.freeze(),
        exposed_port=exposed_port,
        entry_command=tuple(entry),
        build_stage=build_stage,
    )
    return ValidationResult("ImageDescriptor", descriptor)


def load_image_descriptor(path: str) -> ValidationResult[ImageDescriptor]:
    with open(path, "r", encoding="utf-8") as handle:
        return parse_dockerfile(handle.read())


def check_workload_matches_image(workload: WorkloadDescriptor, image: ImageDescriptor) -> tuple[Violation, ...]:
    if image.exposed_port is not None and workload.container_port != image.exposed_port:
        return (
            Violation(
                "containerPort",
                f"must equal the image's exposed port ({image.exposed_port})",
                workload.container_port,
            ),
        )
    return ()
