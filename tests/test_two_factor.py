"""
CraftCtrl - Two-Factor Authentication Tests

Unit tests for TOTP setup, confirmation, verification and removal.

Run with: pytest tests/test_two_factor.py
"""

import pyotp
import pytest

from craftctrl.errors import InvalidInput, NotFound, Unauthorized
from tests.conftest import current_code, wrong_code


class TestTwoFactorSetup:

    async def test_setup_stores_pending_secret(self, two_factor, store, bob):
        setup = await two_factor.setup_2fa(bob.id)

        user = store.get_user_by_id(bob.id)
        assert user.two_factor_secret == setup.secret
        assert user.two_factor_enabled is False

    async def test_provisioning_uri(self, two_factor, bob):
        setup = await two_factor.setup_2fa(bob.id)

        assert setup.provisioning_uri.startswith("otpauth://totp/")
        assert "issuer=CraftCtrl" in setup.provisioning_uri
        assert setup.secret in setup.provisioning_uri

    async def test_setup_again_replaces_pending_secret(self, two_factor, bob):
        first = await two_factor.setup_2fa(bob.id)
        second = await two_factor.setup_2fa(bob.id)

        assert first.secret != second.secret

    async def test_setup_when_enabled(self, two_factor, totp_user):
        user, _ = totp_user

        with pytest.raises(InvalidInput):
            await two_factor.setup_2fa(user.id)

    async def test_setup_unknown_user(self, two_factor):
        with pytest.raises(NotFound):
            await two_factor.setup_2fa("missing")


class TestTwoFactorEnable:

    async def test_enable_with_valid_code(self, two_factor, store, clock, bob):
        setup = await two_factor.setup_2fa(bob.id)

        await two_factor.enable_2fa(bob.id, current_code(pyotp.TOTP(setup.secret), clock))

        assert store.get_user_by_id(bob.id).two_factor_enabled is True

    async def test_enable_with_wrong_code(self, two_factor, store, clock, bob):
        setup = await two_factor.setup_2fa(bob.id)

        with pytest.raises(Unauthorized):
            await two_factor.enable_2fa(bob.id, wrong_code(pyotp.TOTP(setup.secret), clock))

        assert store.get_user_by_id(bob.id).two_factor_enabled is False

    async def test_enable_without_setup(self, two_factor, bob):
        with pytest.raises(InvalidInput):
            await two_factor.enable_2fa(bob.id, "123456")

    async def test_enable_twice(self, two_factor, clock, totp_user):
        user, totp = totp_user

        with pytest.raises(InvalidInput):
            await two_factor.enable_2fa(user.id, current_code(totp, clock))


class TestTwoFactorVerify:

    async def test_tolerates_one_step_of_drift(self, two_factor, clock, totp_user):
        user, totp = totp_user
        code = current_code(totp, clock)

        clock.advance(seconds=30)
        assert await two_factor.verify_2fa(user.id, code) is True

        clock.advance(seconds=60)
        assert await two_factor.verify_2fa(user.id, code) is False

    async def test_pending_secret_can_be_checked(self, two_factor, clock, bob):
        setup = await two_factor.setup_2fa(bob.id)

        assert await two_factor.verify_2fa(bob.id, current_code(pyotp.TOTP(setup.secret), clock))

    async def test_verify_without_secret(self, two_factor, bob):
        with pytest.raises(InvalidInput):
            await two_factor.verify_2fa(bob.id, "123456")

    def test_check_code_rejects_empty(self, two_factor):
        assert two_factor.check_code(pyotp.random_base32(), "") is False
        assert two_factor.check_code("", "123456") is False


class TestTwoFactorDisable:

    async def test_disable_clears_secret(self, two_factor, store, clock, totp_user):
        user, totp = totp_user

        await two_factor.disable_2fa(user.id, current_code(totp, clock))

        updated = store.get_user_by_id(user.id)
        assert updated.two_factor_enabled is False
        assert updated.two_factor_secret is None

    async def test_disable_with_wrong_code(self, two_factor, store, clock, totp_user):
        user, totp = totp_user

        with pytest.raises(Unauthorized):
            await two_factor.disable_2fa(user.id, wrong_code(totp, clock))

        assert store.get_user_by_id(user.id).two_factor_enabled is True

    async def test_disable_when_not_enabled(self, two_factor, bob):
        with pytest.raises(InvalidInput):
            await two_factor.disable_2fa(bob.id, "123456")

    async def test_remove_is_disable(self, two_factor, store, clock, totp_user):
        user, totp = totp_user

        await two_factor.remove_2fa(user.id, current_code(totp, clock))

        assert store.get_user_by_id(user.id).two_factor_secret is None
