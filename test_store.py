"""
Credential store, device-history policy and key/value persistence tests
"""

import asyncio
import json

import pytest

from sentinel.core.errors import DuplicateAccount, InvalidCredentials, StorageCorrupt
from sentinel.db.accounts import USERS_KEY, CredentialStore, merge_device_history
from sentinel.models.models import Account, RiskLevel
from sentinel.utils.helpers import legacy_digest, make_digest, verify_digest


class TestDigests:
    """Credential digest schemes"""

    def test_legacy_digest_matches_known_values(self):
        assert legacy_digest("") == "0"
        assert legacy_digest("a") == "61"
        assert legacy_digest("hello") == "5e918d2"

    def test_legacy_digest_negative_values_keep_sign(self):
        assert legacy_digest("Hello World") == "-3369657c"

    def test_scrypt_digest_is_salted(self):
        first = make_digest("secret1", "scrypt")
        second = make_digest("secret1", "scrypt")
        assert first.startswith("scrypt$")
        assert first != second
        assert verify_digest("secret1", first)
        assert not verify_digest("wrong", first)

    def test_verify_legacy(self):
        assert verify_digest("secret1", legacy_digest("secret1"))
        assert not verify_digest("secret2", legacy_digest("secret1"))


class TestKeyValueStore:
    async def test_set_get_delete(self, kv):
        assert await kv.get_raw("missing") is None
        await kv.set_json("k", {"a": 1})
        assert json.loads(await kv.get_raw("k")) == {"a": 1}
        await kv.set_raw("k", "[]")
        assert await kv.get_raw("k") == "[]"
        await kv.delete("k")
        assert await kv.get_raw("k") is None

    async def test_file_backed_store_persists(self, tmp_path):
        from sentinel.db.store import KeyValueStore
        path = str(tmp_path / "nested" / "store.db")
        first = KeyValueStore(path)
        await first.init()
        await first.set_json("k", ["v"])
        await first.close()

        second = KeyValueStore(path)
        await second.init()
        assert json.loads(await second.get_raw("k")) == ["v"]
        await second.close()


class TestRegistrationAndLogin:
    async def test_alice_scenario(self, accounts):
        """Register, reject a wrong password, accept the right one"""
        registered = await accounts.register("Alice", "alice@domain.example", "secret1")
        assert not hasattr(registered, "password")

        with pytest.raises(InvalidCredentials):
            await accounts.authenticate("alice@domain.example", "wrong")

        session = await accounts.authenticate("alice@domain.example", "secret1")
        assert session.id == registered.id
        assert session.is_verified is False
        assert session.history == []
        assert session.device_history == []

    async def test_unknown_email_same_error(self, accounts):
        await accounts.register("Alice", "alice@domain.example", "secret1")
        with pytest.raises(InvalidCredentials) as exc:
            await accounts.authenticate("nobody@domain.example", "secret1")
        assert str(exc.value) == "Invalid credentials"

    async def test_duplicate_email_rejected(self, accounts):
        await accounts.register("Alice", "alice@domain.example", "secret1")
        with pytest.raises(DuplicateAccount):
            await accounts.register("Other Alice", "alice@domain.example", "secret2")

    async def test_register_persists_digest_not_password(self, kv, accounts):
        await accounts.register("Alice", "alice@domain.example", "secret1")
        table = json.loads(await kv.get_raw(USERS_KEY))
        assert table["version"] == 2
        record = table["accounts"][0]
        assert record["password"] == legacy_digest("secret1")
        assert "secret1" not in json.dumps(table)

    async def test_scrypt_scheme_round_trip(self, kv):
        store = CredentialStore(kv, digest_scheme="scrypt")
        await store.register("Bob", "bob@domain.example", "hunter2")
        session = await store.authenticate("bob@domain.example", "hunter2")
        assert session.email == "bob@domain.example"
        with pytest.raises(InvalidCredentials):
            await store.authenticate("bob@domain.example", "hunter3")


class TestVerificationResults:
    async def test_low_risk_sets_verified(self, accounts, make_result):
        acct = await accounts.register("Alice", "alice@domain.example", "secret1")
        result = make_result(RiskLevel.LOW)
        updated = await accounts.append_verification_result(acct.id, result)
        assert updated.is_verified is True
        assert updated.kyc_result == result
        assert updated.history == [result]

    async def test_high_risk_does_not_verify(self, accounts, make_result):
        acct = await accounts.register("Alice", "alice@domain.example", "secret1")
        updated = await accounts.append_verification_result(acct.id, make_result(RiskLevel.HIGH, 100))
        assert updated.is_verified is False

    @pytest.mark.parametrize("sequence", [
        [RiskLevel.HIGH, RiskLevel.MEDIUM, RiskLevel.HIGH],
        [RiskLevel.LOW, RiskLevel.HIGH, RiskLevel.HIGH],
        [RiskLevel.HIGH, RiskLevel.HIGH],
    ])
    async def test_verified_flag_is_monotonic(self, accounts, make_result, sequence):
        acct = await accounts.register("Alice", "alice@domain.example", "secret1")
        expected = False
        for level in sequence:
            updated = await accounts.append_verification_result(acct.id, make_result(level))
            expected = expected or level != RiskLevel.HIGH
            assert updated.is_verified is expected

    async def test_history_is_newest_first(self, accounts, make_result):
        acct = await accounts.register("Alice", "alice@domain.example", "secret1")
        first, second = make_result(), make_result(RiskLevel.MEDIUM)
        await accounts.append_verification_result(acct.id, first)
        updated = await accounts.append_verification_result(acct.id, second)
        assert [r.id for r in updated.history] == [second.id, first.id]
        assert updated.kyc_result == second

    async def test_results_are_isolated_per_account(self, accounts, make_result):
        alice = await accounts.register("Alice", "alice@domain.example", "secret1")
        bob = await accounts.register("Bob", "bob@domain.example", "secret2")
        await accounts.append_verification_result(alice.id, make_result())
        assert (await accounts.get_account(bob.id)).history == []

    async def test_unknown_account_ignored(self, accounts, make_result):
        assert await accounts.append_verification_result("missing", make_result()) is None

    async def test_optional_history_cap(self, kv, make_result):
        store = CredentialStore(kv, max_verification_results=2)
        acct = await store.register("Alice", "alice@domain.example", "secret1")
        for _ in range(4):
            updated = await store.append_verification_result(acct.id, make_result())
        assert len(updated.history) == 2


class TestDeviceHistoryPolicy:
    def test_same_ip_within_hour_then_new_ip(self, make_fingerprint):
        """Scenario: 1.2.3.4@0s, 1.2.3.4@1800s, 5.6.7.8@1900s -> 2 entries"""
        first = make_fingerprint("1.2.3.4", 0)
        second = make_fingerprint("1.2.3.4", 1800)
        third = make_fingerprint("5.6.7.8", 1900)

        history, appended = merge_device_history([], first)
        assert appended
        history, appended = merge_device_history(history, second)
        assert not appended
        history, appended = merge_device_history(history, third)
        assert appended
        assert history == [third, first]

    def test_same_ip_after_an_hour_is_recorded(self, make_fingerprint):
        history, _ = merge_device_history([], make_fingerprint("1.2.3.4", 0))
        history, appended = merge_device_history(history, make_fingerprint("1.2.3.4", 3601))
        assert appended
        assert len(history) == 2

    def test_exactly_one_hour_is_still_a_duplicate(self, make_fingerprint):
        history, _ = merge_device_history([], make_fingerprint("1.2.3.4", 0))
        _, appended = merge_device_history(history, make_fingerprint("1.2.3.4", 3600))
        assert not appended

    def test_history_capped_at_fifty(self, make_fingerprint):
        history = []
        for i in range(60):
            history, _ = merge_device_history(history, make_fingerprint(f"10.0.0.{i}", i))
            assert len(history) <= 50
        assert len(history) == 50
        assert history[0].ip == "10.0.0.59"
        assert history[-1].ip == "10.0.0.10"

    async def test_store_tracks_last_known_device(self, accounts, make_fingerprint):
        acct = await accounts.register("Alice", "alice@domain.example", "secret1")
        first = make_fingerprint("1.2.3.4", 0)
        updated = await accounts.merge_device_fingerprint(acct.id, first)
        assert updated.last_known_device == first

        updated = await accounts.merge_device_fingerprint(acct.id, make_fingerprint("1.2.3.4", 60))
        assert updated.device_history == [first]
        assert updated.last_known_device == updated.device_history[0]

        third = make_fingerprint("5.6.7.8", 120)
        updated = await accounts.merge_device_fingerprint(acct.id, third)
        assert updated.device_history == [third, first]
        assert updated.last_known_device == third


class TestTableIntegrity:
    async def test_version_one_array_is_migrated(self, kv):
        legacy = [{
            "id": "legacy-1",
            "name": "Old User",
            "email": "old@domain.example",
            "password": legacy_digest("pw"),
            "isVerified": False,
            "kycResult": None,
            "accountCreated": 1600000000000,
        }]
        await kv.set_json(USERS_KEY, legacy)
        store = CredentialStore(kv)

        session = await store.authenticate("old@domain.example", "pw")
        assert session.history == [] and session.device_history == []

        await store.register("New", "new@domain.example", "pw2")
        table = json.loads(await kv.get_raw(USERS_KEY))
        assert table["version"] == 2
        assert table["accounts"][0]["history"] == []

    async def test_invalid_json_is_storage_corrupt(self, kv, accounts):
        await kv.set_raw(USERS_KEY, "{not json")
        with pytest.raises(StorageCorrupt):
            await accounts.authenticate("a@b.c", "x")
        # data is left for inspection
        assert await kv.get_raw(USERS_KEY) == "{not json"

    async def test_malformed_record_is_storage_corrupt(self, kv, accounts):
        await kv.set_json(USERS_KEY, {"version": 2, "accounts": [{"id": "x"}]})
        with pytest.raises(StorageCorrupt):
            await accounts.register("A", "a@b.c", "x")

    async def test_future_version_rejected(self, kv, accounts):
        await kv.set_json(USERS_KEY, {"version": 99, "accounts": []})
        with pytest.raises(StorageCorrupt):
            await accounts.get_account("x")

    async def test_account_round_trip(self, accounts, make_result, make_fingerprint):
        acct = await accounts.register("Alice", "alice@domain.example", "secret1")
        await accounts.append_verification_result(acct.id, make_result())
        await accounts.merge_device_fingerprint(acct.id, make_fingerprint())
        table = await accounts._load_table()
        original = table[0]
        assert Account.from_dict(json.loads(json.dumps(original.to_dict()))) == original

    async def test_concurrent_updates_do_not_lose_writes(self, accounts, make_result, make_fingerprint):
        acct = await accounts.register("Alice", "alice@domain.example", "secret1")
        results = [make_result() for _ in range(5)]
        await asyncio.gather(
            *(accounts.append_verification_result(acct.id, r) for r in results),
            *(accounts.merge_device_fingerprint(acct.id, make_fingerprint(f"10.0.0.{i}", i)) for i in range(5)),
        )
        final = await accounts.get_account(acct.id)
        assert len(final.history) == 5
        assert len(final.device_history) == 5
