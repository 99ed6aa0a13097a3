import ast
from pathlib import Path


def _offenders(package_dir: Path, forbidden_prefixes: tuple[str, ...]) -> list[str]:
    offenders: list[str] = []
    for path in sorted(package_dir.rglob("*.py")):
        tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    if alias.name.startswith(forbidden_prefixes):
                        offenders.append(f"{path}: import {alias.name}")
            elif isinstance(node, ast.ImportFrom):
                if node.module is None:
                    continue
                if node.module.startswith(forbidden_prefixes):
                    offenders.append(f"{path}: from {node.module} import ...")
    return offenders


def test_foundation_does_not_import_framework_or_stages():
    repo_root = Path(__file__).resolve().parents[1]
    foundation_dir = repo_root / "deploy_project" / "foundation"

    forbidden_prefixes = ("deploy_project.framework", "deploy_project.stages", "deploy_project.backends")

    assert _offenders(foundation_dir, forbidden_prefixes) == []


def test_framework_source_does_not_import_stages_backends_or_app():
    repo_root = Path(__file__).resolve().parents[1]
    framework_dir = repo_root / "deploy_project" / "framework"

    forbidden_prefixes = ("deploy_project.stages", "deploy_project.backends", "deploy_project.app")

    assert _offenders(framework_dir, forbidden_prefixes) == []


def test_stages_source_does_not_import_backends_or_app():
    repo_root = Path(__file__).resolve().parents[1]
    stages_dir = repo_root / "deploy_project" / "stages"

    forbidden_prefixes = ("deploy_project.backends", "deploy_project.app")

    assert _offenders(stages_dir, forbidden_prefixes) == []
