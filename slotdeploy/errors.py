class DeploymentError(Exception):
    """Raised when a deployment step fails."""
    pass


class ConfigError(DeploymentError):
    """Settings failed validation. Lists every invalid field."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__(
            "Invalid configuration:\n" + "\n".join(f"  - {p}" for p in problems)
        )


class CommandError(DeploymentError):
    """An external command exited non-zero or timed out."""

    def __init__(self, cmd: str, returncode: int | None, stderr: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        if returncode is None:
            msg = f"Command timed out: {cmd}"
        else:
            msg = f"Command failed (rc={returncode}): {cmd}"
        if stderr:
            msg += f"\nstderr: {stderr}"
        super().__init__(msg)


class PreflightError(DeploymentError):
    pass


class StagingError(DeploymentError):
    """Artifact malformed, extraction failed or release id collided."""
    pass


class SupervisorError(DeploymentError):
    pass


class HealthTimeout(DeploymentError):
    def __init__(self, port: int, attempts: int, last_status: int | None = None):
        self.port = port
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(
            f"Port {port} not healthy after {attempts} attempts "
            f"(last status: {last_status if last_status is not None else 'no response'})"
        )


class ProxyReloadError(DeploymentError):
    """New backend config was rejected; live pointer untouched."""
    pass


class PruneError(DeploymentError):
    pass
