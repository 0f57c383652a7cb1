"""Unit tests for password hashing."""

import pytest
from unittest.mock import AsyncMock, Mock

from kvm_spinup.credentials import PasswordHasher
from kvm_spinup.exceptions import CommandError, ValidationError

SHA512_HASH = "$6$saltsalt$" + "c" * 86


def make_runner(**run_kwargs):
    runner = Mock()
    runner.run = AsyncMock(**run_kwargs)
    return runner


class TestPasswordHasher:
    """Test PasswordHasher."""

    @pytest.mark.asyncio
    async def test_secret_sent_on_stdin_only(self):
        runner = make_runner(return_value=(SHA512_HASH + "\n", "", 0))

        credential = await PasswordHasher(runner).hash("UserPass123")

        assert credential == SHA512_HASH
        argv = runner.run.call_args.args[0]
        assert "UserPass123" not in " ".join(argv)
        assert runner.run.call_args.kwargs["input"] == "UserPass123\n"

    @pytest.mark.asyncio
    async def test_unexpected_format_rejected(self):
        runner = make_runner(return_value=("not-a-hash\n", "", 0))
        with pytest.raises(ValidationError) as exc_info:
            await PasswordHasher(runner).hash("UserPass123", "Root password")
        assert exc_info.value.field == "Root password"

    @pytest.mark.asyncio
    async def test_command_failure_is_validation_error(self):
        runner = make_runner(side_effect=CommandError(["openssl"], 1, "unknown option"))
        with pytest.raises(ValidationError, match="hash generation failed"):
            await PasswordHasher(runner).hash("UserPass123")
