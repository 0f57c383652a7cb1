"""Password hashing through the host's openssl."""

from .commands import CommandBuilder, CommandRunner
from .exceptions import CommandError, ValidationError
from .security import SecurityValidator


class PasswordHasher:
    """Produces SHA-512 crypt credentials for kickstart user directives."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    async def hash(self, secret: str, field: str = "password") -> str:
        # The secret travels on stdin so it never shows up in the process table
        try:
            stdout, _, _ = await self.runner.run(
                CommandBuilder.openssl_passwd(), input=secret + "\n"
            )
        except CommandError as e:
            raise ValidationError(f"Password hash generation failed: {e.message}", field)
        return SecurityValidator.validate_password_hash(stdout.strip(), field)
