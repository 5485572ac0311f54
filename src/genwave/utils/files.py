import json
from pathlib import Path


def read_jsonl_file(file_path: str | Path) -> list[dict]:
    """Read a JSONL file and return its non-empty lines as JSON objects

    Args:
        file_path (str | Path): The path to the file to read
    """
    with open(file_path, "r") as f:
        return [json.loads(line) for line in f.readlines() if line.strip()]


def read_inputs_file(file_path: str | Path) -> list[dict]:
    """Read batch inputs from a JSON array file or a JSONL file

    Args:
        file_path (str | Path): The path to the file to read

    Raises:
        ValueError: If the file holds something other than a list of objects
    """
    path = Path(file_path)
    if path.suffix == ".jsonl":
        items = read_jsonl_file(path)
    else:
        items = json.loads(path.read_text())
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ValueError(f"{path} must contain a list of input objects")
    return items
