"""Tests for shadow.core.ledger — lifecycle, single-spend and balances."""

from __future__ import annotations

import threading

import pytest

from shadow.core.commitment import field_from_hex, nullifier
from shadow.core.errors import (
    AlreadyReservedOrSpentError,
    DoubleSpendError,
    InsufficientBalanceError,
    InvalidAmountError,
    NoteNotConfirmedError,
    NoteNotFoundError,
)
from shadow.core.ledger import NoteLedger
from shadow.core.merkle import MerkleAccumulator
from shadow.core.storage import EncryptedStore
from shadow.core.types import NoteState


class TestCreateAndConfirm:
    def test_create_does_not_touch_accumulator(self, ledger, accumulator):
        note = ledger.create_note(50, "alice")
        assert accumulator.leaf_count == 0
        assert note.leaf_index is None
        assert not note.confirmed
        assert ledger.state_of(note.commitment) is NoteState.PENDING

    def test_note_fields_consistent(self, ledger):
        note = ledger.create_note(50, "alice")
        assert len(note.commitment) == 64
        expected = nullifier(field_from_hex(note.commitment), note.secret_bytes)
        assert note.nullifier_value == expected

    def test_secret_not_in_repr(self, ledger):
        note = ledger.create_note(50, "alice")
        assert note.secret not in repr(note)
        assert note.nonce not in repr(note)

    def test_confirm_assigns_leaf(self, ledger, accumulator):
        first = ledger.create_note(10, "alice")
        second = ledger.create_note(20, "alice")
        confirmed = ledger.confirm_note(second.commitment, "sig-2")
        assert confirmed.leaf_index == 0
        assert accumulator.leaf(0) == second.commitment_value
        assert ledger.confirm_note(first.commitment, "sig-1").leaf_index == 1

    def test_confirm_is_idempotent(self, ledger, accumulator):
        note = ledger.create_note(10, "alice")
        ledger.confirm_note(note.commitment, "sig")
        ledger.confirm_note(note.commitment, "sig")
        assert accumulator.leaf_count == 1

    def test_confirm_unknown(self, ledger):
        with pytest.raises(NoteNotFoundError):
            ledger.confirm_note("00" * 32, "sig")

    def test_invalid_amounts(self, ledger):
        for bad in (0, -5, 2**64, True):
            with pytest.raises(InvalidAmountError):
                ledger.create_note(bad, "alice")

    def test_discard_only_unconfirmed(self, ledger, confirmed_note):
        pending = ledger.create_note(5, "alice")
        assert ledger.discard_note(pending.commitment) is True
        assert ledger.get_note(pending.commitment) is None
        assert ledger.discard_note(confirmed_note.commitment) is False


class TestSelection:
    def test_unconfirmed_not_spendable(self, ledger):
        note = ledger.create_note(100, "alice")
        with pytest.raises(InsufficientBalanceError):
            ledger.select_spendable("alice", 10)
        with pytest.raises(NoteNotConfirmedError):
            ledger.begin_spend(note)

    def test_smallest_covering_note(self, ledger):
        for amount in (500, 80, 120):
            note = ledger.create_note(amount, "alice")
            ledger.confirm_note(note.commitment, f"sig-{amount}")
        assert ledger.select_spendable("alice", 100).amount == 120
        assert ledger.select_spendable("alice", 80).amount == 80

    def test_no_single_note_covers(self, ledger):
        for amount in (60, 60):
            note = ledger.create_note(amount, "alice")
            ledger.confirm_note(note.commitment, "sig")
        with pytest.raises(InsufficientBalanceError, match="no single active note"):
            ledger.select_spendable("alice", 100)

    def test_other_owner_ignored(self, ledger, confirmed_note):
        with pytest.raises(InsufficientBalanceError):
            ledger.select_spendable("bob", 1)


class TestSpendProtocol:
    def test_reserved_note_cannot_be_reserved_again(self, ledger, confirmed_note):
        ledger.begin_spend(confirmed_note)
        with pytest.raises(AlreadyReservedOrSpentError, match="reserved"):
            ledger.begin_spend(confirmed_note)

    def test_concurrent_begin_spend_exactly_one_wins(self, ledger, confirmed_note):
        results: list[str] = []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            try:
                ledger.begin_spend(confirmed_note)
                results.append("ok")
            except AlreadyReservedOrSpentError:
                results.append("conflict")

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count("ok") == 1
        assert results.count("conflict") == 7

    def test_commit_marks_spent_and_records_nullifier(self, ledger, confirmed_note):
        ticket = ledger.begin_spend(confirmed_note)
        spent = ledger.commit_spend(ticket, "withdraw-sig")
        assert spent.spent
        assert spent.spent_ref == "withdraw-sig"
        assert ledger.is_nullifier_used(confirmed_note.nullifier)
        assert ledger.state_of(confirmed_note.commitment) is NoteState.SPENT

    def test_second_commit_is_double_spend(self, ledger, confirmed_note):
        ticket = ledger.begin_spend(confirmed_note)
        ledger.commit_spend(ticket, "sig-1")
        with pytest.raises(DoubleSpendError):
            ledger.commit_spend(ticket, "sig-2")
        assert ledger.spent_count == 1

    def test_spent_note_cannot_be_reserved(self, ledger, confirmed_note):
        ledger.commit_spend(ledger.begin_spend(confirmed_note), "sig")
        with pytest.raises(AlreadyReservedOrSpentError, match="spent"):
            ledger.begin_spend(confirmed_note)

    def test_abort_restores_spendability(self, ledger, confirmed_note):
        ticket = ledger.begin_spend(confirmed_note)
        assert ledger.balance("alice") == 0
        assert ledger.abort_spend(ticket) is True
        assert ledger.balance("alice") == 100
        assert ledger.abort_spend(ticket) is False
        assert ledger.begin_spend(confirmed_note).ticket_id != ticket.ticket_id

    def test_stale_ticket_rejected_after_abort(self, ledger, confirmed_note):
        stale = ledger.begin_spend(confirmed_note)
        ledger.abort_spend(stale)
        fresh = ledger.begin_spend(confirmed_note)
        with pytest.raises(AlreadyReservedOrSpentError):
            ledger.commit_spend(stale, "sig")
        assert ledger.abort_spend(stale) is False
        ledger.commit_spend(fresh, "sig")

    def test_sweep_expired(self, ledger, confirmed_note, clock):
        ticket = ledger.begin_spend(confirmed_note)
        clock.advance(10)
        assert ledger.sweep_expired() == []
        clock.advance(25)
        assert ledger.sweep_expired() == [ticket]
        assert ledger.pending_tickets == 0
        assert ledger.balance("alice") == 100

    def test_confirmation_after_sweep_still_commits(self, ledger, confirmed_note, clock, settings):
        ticket = ledger.begin_spend(confirmed_note)
        clock.advance(settings.spend_ticket_ttl_seconds + 1)
        assert ledger.sweep_expired() == [ticket]

        spent = ledger.commit_spend(ticket, "chain-sig")
        assert spent.spent_ref == "chain-sig"
        assert ledger.state_of(confirmed_note.commitment) is NoteState.SPENT
        assert ledger.is_nullifier_used(confirmed_note.nullifier)
        assert ledger.balance("alice") == 0
        with pytest.raises(AlreadyReservedOrSpentError):
            ledger.begin_spend(confirmed_note)


class TestChangeNotes:
    def test_change_must_be_smaller(self, ledger, confirmed_note):
        with pytest.raises(InvalidAmountError):
            ledger.create_change_note(confirmed_note, 100)

    def test_change_inherits_owner(self, ledger, confirmed_note):
        change = ledger.create_change_note(confirmed_note, 40)
        assert change.owner == "alice"
        assert change.parent_commitment == confirmed_note.commitment
        assert not change.confirmed

    def test_alice_partial_spend_scenario(self, ledger, accumulator):
        note = ledger.create_note(100, "alice")
        note = ledger.confirm_note(note.commitment, "deposit")
        assert note.leaf_index == 0

        selected = ledger.select_spendable("alice", 60)
        assert selected.commitment == note.commitment
        ticket = ledger.begin_spend(selected)
        change = ledger.create_change_note(selected, 40)

        ledger.commit_spend(ticket, "withdraw")
        assert ledger.get_note(note.commitment).spent
        assert ledger.is_nullifier_used(note.nullifier)
        assert ledger.balance("alice") == 0

        ledger.confirm_note(change.commitment, "withdraw")
        assert ledger.balance("alice") == 40
        assert accumulator.leaf_count == 2


class TestBalanceInvariant:
    def test_balance_matches_definition_after_interleavings(self, ledger):
        notes = []
        for amount in (10, 20, 30, 40, 50):
            note = ledger.create_note(amount, "alice")
            notes.append(note)
        for note in notes[:4]:
            ledger.confirm_note(note.commitment, "sig")
        ledger.commit_spend(ledger.begin_spend(notes[0]), "s0")
        held = ledger.begin_spend(notes[1])
        aborted = ledger.begin_spend(notes[2])
        ledger.abort_spend(aborted)

        expected = sum(
            n.amount
            for n in ledger.all_notes()
            if n.owner == "alice"
            and not n.spent
            and n.confirmed
            and ledger.state_of(n.commitment) is not NoteState.RESERVED
        )
        assert ledger.balance("alice") == expected == 30 + 40
        ledger.abort_spend(held)
        assert ledger.balance("alice") == 20 + 30 + 40


class TestPersistence:
    def test_reload_rebuilds_nullifier_set(self, settings, tmp_path):
        store = EncryptedStore(tmp_path / "notes.enc", scrypt_n=2**4).unlock("pw")
        tree = MerkleAccumulator(settings.merkle_tree_depth)
        ledger = NoteLedger(settings, tree, store)
        note = ledger.create_note(100, "alice")
        ledger.confirm_note(note.commitment, "sig")
        ledger.commit_spend(ledger.begin_spend(ledger.get_note(note.commitment)), "spend")
        other = ledger.create_note(7, "bob")

        reloaded = NoteLedger(settings, tree, EncryptedStore(tmp_path / "notes.enc", scrypt_n=2**4).unlock("pw"))
        assert reloaded.load() == 2
        assert reloaded.is_nullifier_used(note.nullifier)
        assert reloaded.get_note(other.commitment).amount == 7
        assert reloaded.spent_count == 1

    def test_export_import_dedupes(self, settings, ledger, confirmed_note):
        fresh = NoteLedger(settings, MerkleAccumulator(settings.merkle_tree_depth))
        assert fresh.import_(ledger.export()) == 1
        assert fresh.import_(ledger.export()) == 0
        assert fresh.note_count == 1
        assert fresh.unspent_notes("alice")[0].commitment == confirmed_note.commitment
