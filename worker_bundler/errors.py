"""Build error taxonomy."""


class BuildError(RuntimeError):
    """Raised when bundling fails."""


class ConfigurationError(BuildError):
    """Raised when upstream build metadata or user configuration is unusable."""


class BundleError(BuildError):
    """Raised when the bundling engine cannot produce an artifact."""


class PatchToolError(BuildError):
    """Raised when the external text-substitution tool fails.

    The patch step recovers from this by skipping; it never aborts a build.
    """


class RuleApplicationError(BuildError):
    """Raised when a rewrite rule cannot be applied to a visited file.

    :ivar rule_id: Identifier of the failing rule.
    :ivar path: Virtual path of the file being rewritten.
    """

    def __init__(self, rule_id: str, path: str, message: str) -> None:
        super().__init__(f"rewrite rule {rule_id!r} failed on {path}: {message}")
        self.rule_id: str = rule_id
        self.path: str = path
