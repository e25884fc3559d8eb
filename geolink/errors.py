from __future__ import annotations

EXIT_OK = 0
EXIT_RECIPROCITY = 1
EXIT_ORPHANS = 2
EXIT_DUPLICATE_CLUSTERS = 3
EXIT_MISSING_CLUSTERS = 4
EXIT_REPORT_SCHEMA = 5
EXIT_INPUT_MISSING = 6
EXIT_DRIFT = 7
EXIT_FINDINGS_PROMOTED = 8
EXIT_IO_ERROR = 9


class GeoLinkError(Exception):
    """Base class for aborting failures; carries a stable code for CI."""

    error_code = "E_GEOLINK"
    exit_code = EXIT_IO_ERROR

    def __str__(self) -> str:
        return f"{self.error_code}: {super().__str__()}"


class InputMissingError(GeoLinkError):
    error_code = "E_INPUT_MISSING"
    exit_code = EXIT_INPUT_MISSING

    def __init__(self, label: str, path: object) -> None:
        self.label = label
        self.path = path
        super().__init__(f"required {label} dataset not found: {path}")


class SchemaViolationError(GeoLinkError):
    error_code = "E_SCHEMA_VIOLATION"
    exit_code = EXIT_FINDINGS_PROMOTED

    def __init__(self, findings: list) -> None:
        self.findings = list(findings)
        super().__init__(f"{len(self.findings)} dataset finding(s) promoted to fatal")


class ReportSchemaError(GeoLinkError):
    error_code = "E_REPORT_SCHEMA"
    exit_code = EXIT_REPORT_SCHEMA

    def __init__(self, report_kind: str, location: str, message: str) -> None:
        self.report_kind = report_kind
        self.location = location
        super().__init__(f"{report_kind} report invalid at {location}: {message}")


class DriftDetectedError(GeoLinkError):
    error_code = "E_DRIFT_DETECTED"
    exit_code = EXIT_DRIFT

    def __init__(
        self, artifact: str, baseline_digest: str, current_digest: str
    ) -> None:
        self.artifact = artifact
        self.baseline_digest = baseline_digest
        self.current_digest = current_digest
        super().__init__(
            f"{artifact} drifted from baseline "
            f"({baseline_digest[:12]} != {current_digest[:12]})"
        )
