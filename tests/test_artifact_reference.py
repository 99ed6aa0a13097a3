import pytest

from deploy_project.framework.descriptors import ArtifactReference


@pytest.mark.parametrize(
    "text",
    [
        "registry.example.com/team/web:abc123",
        "localhost:5000/web:v1.2.3",
        "123456789012.dkr.ecr.eu-west-1.amazonaws.com/web/frontend:0f3c9e1",
    ],
)
def test_reference_renders_back_exactly(text):
    reference = ArtifactReference.parse(text)

    assert str(reference) == text
    assert ArtifactReference.parse(str(reference)) == reference


def test_parse_splits_registry_repository_and_tag():
    reference = ArtifactReference.parse("localhost:5000/team/web:v1")

    assert reference == ArtifactReference(registry="localhost:5000", repository="team/web", tag="v1")


@pytest.mark.parametrize("text", ["web:latest", "registry.example.com/web", "registry.example.com/web@sha256:abc", ""])
def test_parse_rejects_incomplete_references(text):
    with pytest.raises(ValueError, match="Invalid artifact reference"):
        ArtifactReference.parse(text)
