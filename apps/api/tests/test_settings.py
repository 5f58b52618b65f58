import pytest

from kfactor_api.core.settings import Settings


def test_tracked_paths_default() -> None:
    assert Settings(_env_file=None).attribution_tracked_paths == ["/results", "/cohort", "/fvm", "/app"]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("/results,/app", ["/results", "/app"]),
        (" /results , ,/cohort ", ["/results", "/cohort"]),
        ('["/fvm", "/app"]', ["/fvm", "/app"]),
        ("", []),
    ],
)
def test_tracked_paths_from_environment(monkeypatch, raw, expected) -> None:
    monkeypatch.setenv("ATTRIBUTION_TRACKED_PATHS", raw)

    assert Settings(_env_file=None).attribution_tracked_paths == expected
