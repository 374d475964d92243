from collections import Counter


class Telemetry:
    """Per-attempt relocalisation records, in call order."""

    def __init__(self):
        self.attempts = []

    def log_attempt(self, idx: int, rec: dict):
        rec["attempt_idx"] = idx
        self.attempts.append(rec)

    def next_index(self) -> int:
        return len(self.attempts)

    def summary(self) -> dict:
        counts = Counter(rec.get("status") for rec in self.attempts)
        return {"nb_attempts": len(self.attempts), "by_status": dict(counts)}
