from pathlib import Path

from skillforge.config import AppSettings


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def sample_plan(step_count: int = 4, **fields) -> dict:
    """Plan content shaped like the generator's output, camelCase keys included."""
    content = {
        "title": "Learn Rust",
        "description": "Ownership, borrowing and async",
        "estimatedTimeToComplete": "6 weeks",
        "tags": ["rust", "systems"],
        "skill": "rust",
        "steps": [
            {"id": f"s{i}", "title": f"Step {i}", "description": f"Do step {i}"}
            for i in range(1, step_count + 1)
        ],
    }
    content.update(fields)
    return content
