"""Per-root store of suppressed finding fingerprints."""

import json
import logging
from collections.abc import Iterable
from pathlib import Path

from agent_review.models.findings import Finding

logger = logging.getLogger(__name__)

STORE_DIR = ".agent-review"
STORE_FILE = "ignore.json"
STORE_VERSION = 1


class SuppressionStore:
    """Fingerprints the user chose to ignore, scoped to one workspace root.

    Stored as `<root>/.agent-review/ignore.json`:
    `{"version": 1, "fingerprints": [...]}`.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._fingerprints: set[str] | None = None

    @property
    def path(self) -> Path:
        """Location of the store file."""
        return self.root / STORE_DIR / STORE_FILE

    def load(self) -> set[str]:
        """Read fingerprints from disk; a missing or corrupt file yields none."""
        if self._fingerprints is not None:
            return self._fingerprints

        self._fingerprints = set()
        if not self.path.exists():
            return self._fingerprints
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read suppression store {self.path}: {e}")
            return self._fingerprints

        fingerprints = data.get("fingerprints") if isinstance(data, dict) else None
        if not isinstance(fingerprints, list):
            logger.warning(f"Ignoring malformed suppression store {self.path}")
            return self._fingerprints
        self._fingerprints = {str(fp) for fp in fingerprints if fp}
        return self._fingerprints

    def add(self, fingerprint: str) -> bool:
        """Persist a fingerprint.

        Returns:
            False if it was empty or already present
        """
        if not fingerprint:
            return False
        fingerprints = self.load()
        if fingerprint in fingerprints:
            return False

        fingerprints.add(fingerprint)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": STORE_VERSION, "fingerprints": sorted(fingerprints)}
        self.path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        logger.info(f"Suppressed {fingerprint} in {self.root}")
        return True

    def count(self) -> int:
        """Number of stored fingerprints."""
        return len(self.load())

    def is_suppressed(self, finding: Finding) -> bool:
        """Whether a finding's fingerprint is in this store."""
        return bool(finding.fingerprint) and finding.fingerprint in self.load()

    def filter(self, findings: Iterable[Finding]) -> tuple[list[Finding], int]:
        """Split off suppressed findings.

        Returns:
            (kept findings, number suppressed)
        """
        kept = []
        suppressed = 0
        for finding in findings:
            if self.is_suppressed(finding):
                suppressed += 1
            else:
                kept.append(finding)
        return kept, suppressed
