import pytest

from cerb2zendesk import MigrationError, derive_status, run_migration
from conftest import make_comment, make_message, make_ticket


@pytest.mark.parametrize(
    "is_closed, is_waiting, expected",
    [
        (True, True, "closed"),
        (True, False, "closed"),
        (False, True, "pending"),
        (False, False, "open"),
    ],
)
def test_status_precedence(is_closed, is_waiting, expected):
    assert derive_status(make_ticket(is_closed=is_closed, is_waiting=is_waiting)) == expected


def test_build_ticket_payload(store, zendesk, migrator):
    store.messages[1] = [make_message(1, 1559390400, "Help!")]
    store.comments[1] = [make_comment(5, 1559390460, "Looking into it")]

    payload = migrator.build_ticket(make_ticket(is_waiting=True))

    assert payload["external_id"] == "ABC-12345-001"
    assert payload["subject"] == "Ticket 1"
    assert payload["requester_id"] is not None
    assert payload["submitter_id"] == payload["requester_id"]
    assert payload["assignee_id"] == 777777777
    assert payload["organization_id"] == migrator.organizations.resolve(10)
    assert payload["status"] == "pending"
    assert payload["created_at"] == "2019-06-01T12:00:00Z"
    assert payload["updated_at"] == "2019-06-01T13:00:00Z"
    assert [c["public"] for c in payload["comments"]] == [True, False]


def test_unmapped_owner_and_missing_org(store, migrator):
    payload = migrator.build_ticket(make_ticket(owner_id=42, org_id=0))
    assert payload["assignee_id"] is None
    assert "organization_id" not in payload


def test_ticket_without_messages_still_migrates(store, zendesk, migrator):
    store.messages[1] = [make_message(1, 1559390400, "  ")]
    store.comments[1] = [make_comment(5, 1559390460, "only a note")]

    migrator.migrate(make_ticket())

    assert [c["value"] for c in zendesk.imported[0]["comments"]] == ["only a note"]


def test_migrate_returns_remote_id(zendesk, migrator):
    remote_id = migrator.migrate(make_ticket())
    assert zendesk.imported[0]["external_id"] == "ABC-12345-001"
    assert isinstance(remote_id, int)


def test_migrate_wraps_rejection(zendesk, migrator):
    zendesk.reject_masks.add("ABC-12345-001")
    with pytest.raises(MigrationError) as exc:
        migrator.migrate(make_ticket())
    assert exc.value.mask == "ABC-12345-001"
    assert "RecordInvalid" in str(exc.value)
    assert exc.value.__cause__ is exc.value.cause


def test_migrate_wraps_unexpected_errors(store, migrator, monkeypatch):
    def boom(ticket):
        raise RuntimeError("malformed row")

    monkeypatch.setattr(store, "messages_for_ticket", boom)
    with pytest.raises(MigrationError, match="malformed row"):
        migrator.migrate(make_ticket())


# -- the driver ----------------------------------------------------------------

def test_failure_does_not_stop_the_run(zendesk, migrator, tmp_path):
    tickets = [make_ticket(1, "AAA-001"), make_ticket(2, "AAA-002"), make_ticket(3, "AAA-003")]
    zendesk.reject_masks.add("AAA-002")
    skipped = tmp_path / "skipped.txt"

    report = run_migration(tickets, migrator, skipped_file=skipped, should_stop=lambda: False)

    assert list(report.migrated) == ["AAA-001", "AAA-003"]
    assert list(report.failed) == ["AAA-002"]
    assert report.last_id == 3
    assert report.summary() == "Migrated 2 of 3 ticket(s), 1 failed"
    assert skipped.read_text(encoding="utf-8").startswith("AAA-002\t")


def test_resolution_is_shared_across_tickets(store, zendesk, migrator):
    tickets = [make_ticket(i, f"AAA-{i:03}") for i in range(1, 6)]
    for t in tickets:
        store.messages[t.id] = [make_message(t.id * 10, 1559390400, ticket_id=t.id)]

    report = run_migration(tickets, migrator, should_stop=lambda: False)

    assert len(report.migrated) == 5
    assert zendesk.count("autocomplete_organizations") == 1
    assert zendesk.count("search_users") == 1
    assert zendesk.count("import_ticket") == 5


def test_skip_existing(zendesk, migrator):
    tickets = [make_ticket(1, "AAA-001"), make_ticket(2, "AAA-002")]
    zendesk.imported.append({"external_id": "AAA-001"})

    report = run_migration(tickets, migrator, skip_existing=True, should_stop=lambda: False)

    assert report.skipped == ["AAA-001"]
    assert list(report.migrated) == ["AAA-002"]
    assert zendesk.count("import_ticket") == 1


def test_stop_between_tickets_records_last_id(zendesk, migrator):
    tickets = [make_ticket(1, "AAA-001"), make_ticket(2, "AAA-002"), make_ticket(3, "AAA-003")]
    calls = iter([False, False, True])

    report = run_migration(tickets, migrator, should_stop=lambda: next(calls))

    assert report.interrupted
    assert report.last_id == 2
    assert list(report.migrated) == ["AAA-001", "AAA-002"]
    assert "--after-id 2" in report.summary()
