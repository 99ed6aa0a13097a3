from pathlib import Path

from deploy_project.framework.image_descriptor import (
    check_workload_matches_image,
    load_image_descriptor,
    parse_dockerfile,
)
from deploy_project.framework.validation import validate_workload

NODE_STATIC_DOCKERFILE = """\
#########################################
# Stage 1: Build
#########################################
FROM node:18-alpine AS builder

WORKDIR /app

COPY package*.json ./

RUN npm ci

COPY . .

RUN npm run build


#########################################
# Stage 2: Runtime (serve static)
#########################################
FROM node:18-alpine

WORKDIR /app

# Install 'serve' globally to serve static files
RUN npm install -g serve

# Copy only build output
COPY --from=builder /app/dist ./dist

EXPOSE 3000

CMD ["serve", "-s", "dist", "-l", "3000"]
"""


def _workload(port: int):
    return validate_workload(
        {
            "name": "web",
            "cluster": "prod-eu",
            "image": "registry.example.com/team/web:abc123",
            "replicas": 2,
            "containerPort": port,
            "resources": {"cpuRequest": "100m", "memoryRequest": "64Mi", "cpuLimit": "200m", "memoryLimit": "128Mi"},
        }
    )


def test_multi_stage_dockerfile_yields_build_and_runtime_stages():
    result = parse_dockerfile(NODE_STATIC_DOCKERFILE)

    assert result.ok, result.violations
    image = result.unwrap()
    assert image.base_runtime == "node:18-alpine"
    assert image.exposed_port == 3000
    assert image.entry_command == ("serve", "-s", "dist", "-l", "3000")
    assert image.build_stage is not None
    assert image.build_stage.name == "builder"
    assert image.build_stage.workdir == "/app"
    assert "RUN npm run build" in image.build_stage.commands
    assert image.runtime_stage.copies_from == ("builder",)


def test_line_continuations_and_shell_form_cmd():
    text = "FROM python:3.12-slim\nRUN pip install \\\n    flask\nEXPOSE 8080/tcp\nCMD python app.py\n"

    image = parse_dockerfile(text).unwrap()

    assert image.build_stage is None
    assert image.runtime_stage.commands == ("RUN pip install flask",)
    assert image.exposed_port == 8080
    assert image.entry_command == ("/bin/sh", "-c", "python app.py")


def test_missing_expose_and_cmd_are_violations():
    result = parse_dockerfile("FROM node:18-alpine\nRUN echo hi\n")

    assert [v.field for v in result.violations] == ["exposedPort", "entryCommand"]


def test_copy_from_unknown_stage_and_orphan_instruction():
    text = "RUN echo early\nFROM node:18-alpine\nCOPY --from=missing /a /b\nEXPOSE 3000\nCMD [\"node\"]\n"

    result = parse_dockerfile(text)

    assert [v.field for v in result.violations] == ["line 1", "stages[0].copyFrom"]


def test_empty_dockerfile_is_rejected():
    result = parse_dockerfile("# nothing here\n")

    assert [v.field for v in result.violations] == ["<root>"]


def test_workload_port_must_match_exposed_port(tmp_path: Path):
    path = tmp_path / "Dockerfile"
    path.write_text(NODE_STATIC_DOCKERFILE, encoding="utf-8")
    image = load_image_descriptor(str(path)).unwrap()

    assert check_workload_matches_image(_workload(3000), image) == ()
    mismatch = check_workload_matches_image(_workload(8080), image)
    assert [v.field for v in mismatch] == ["containerPort"]
