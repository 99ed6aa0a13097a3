from decimal import Decimal

import pytest

from deploy_project.framework.quantities import parse_quantity


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("250m", Decimal("0.25")),
        ("0.5", Decimal("0.5")),
        ("2", Decimal(2)),
        (2, Decimal(2)),
        ("128Mi", Decimal(128 * 2**20)),
        ("1G", Decimal(10**9)),
        ("1e3", Decimal(1000)),
        (" 1Ki ", Decimal(1024)),
    ],
)
def test_parses_cpu_and_memory_quantities(text, expected):
    assert parse_quantity(text) == expected


@pytest.mark.parametrize("text", ["", "lots", "1.2.3", "-1", "12MB", "Mi", True, None])
def test_rejects_malformed_quantities(text):
    with pytest.raises(ValueError):
        parse_quantity(text)
