"""Export versioned JSON Schema files for the AI output contracts.

Usage:
  python scripts/export_schemas.py [--out schemas]
"""

from __future__ import annotations

import argparse
import json
import sys
from importlib import import_module
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# file name -> model name in code_crafter.models
CONTRACTS = {
    "single_question.v1.json": "SingleQuestionV1",
    "generated_question.v1.json": "GeneratedQuestion",
    "grading_result.v1.json": "GradingResult",
    "generated_solution.v1.json": "GeneratedSolution",
    "topic_suggestion.v1.json": "TopicSuggestion",
    "topic_explanation.v1.json": "TopicExplanation",
    "interview_turn.v1.json": "InterviewTurnV1",
}


def write_schema(model: type, output_path: Path) -> None:
    """Write one model schema to disk with stable formatting."""
    schema = model.model_json_schema()
    output_path.write_text(json.dumps(schema, indent=2, ensure_ascii=True) + "\n", encoding="utf-8")


def export_all(schemas_dir: Path) -> list[Path]:
    models_module = import_module("code_crafter.models")
    schemas_dir.mkdir(parents=True, exist_ok=True)

    written: list[Path] = []
    for filename, model_name in CONTRACTS.items():
        path = schemas_dir / filename
        write_schema(getattr(models_module, model_name), path)
        written.append(path)
    return written


def main() -> None:
    parser = argparse.ArgumentParser(description="Export AI output JSON Schemas.")
    parser.add_argument("--out", type=Path, default=REPO_ROOT / "schemas")
    args = parser.parse_args()

    for path in export_all(args.out):
        print(f"Exported {path}")


if __name__ == "__main__":
    main()
