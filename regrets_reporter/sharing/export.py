"""
On-device export of shared data.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

EXPORT_FILE_NAME_TEMPLATE = "youTubeRegretsReporter-sharedData-userUuid={uuid}.json"


def export_file_name(extension_installation_uuid: str) -> str:
    """Deterministic file name for an installation's export."""
    return EXPORT_FILE_NAME_TEMPLATE.format(uuid=extension_installation_uuid)


def build_export_document(
    extension_installation_uuid: str,
    shared_data: List[Dict[str, Any]]
) -> Dict[str, Any]:
    """Wrap exported data points in a document. Empty history is valid."""
    return {
        "extension_installation_uuid": extension_installation_uuid,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "shared_data": list(shared_data),
    }


def write_export_file(document: Dict[str, Any], file_name: str, output_dir: str = ".") -> Path:
    """Write an export document as JSON and return its path."""
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / file_name
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(document, f, indent=2, sort_keys=True)
    return path
