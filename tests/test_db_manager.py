"""
Tests for the repository layer (db_manager.py).

Covers derived timestamps, referential integrity on delete, list filters,
deadline lookups, dashboard aggregation and the export/import/seed helpers.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

import db_manager
from errors import ConflictError, NotFoundError
from models import Client, Payment, PaymentStatus, Project, ProjectStatus, Task, User, db


def days_from_today(days, hours=12):
    """A moment on a fixed calendar day, clear of the midnight boundaries."""
    return db_manager.start_of_today() + timedelta(days=days, hours=hours)


class TestClients:
    """Client CRUD and delete protection."""

    def test_create_stamps_timestamps(self, make_client):
        client = make_client()
        assert client.id is not None
        assert client.created_at is not None
        assert client.updated_at is not None

    def test_list_newest_first(self, make_client):
        first = make_client(name="First")
        second = make_client(name="Second")
        assert [c.id for c in db_manager.get_clients()] == [second.id, first.id]

    def test_update_refreshes_updated_at(self, make_client):
        client = make_client()
        before = client.updated_at
        updated = db_manager.update_client(client.id, {"company": "Acme Group"})
        assert updated.company == "Acme Group"
        assert updated.updated_at >= before

    def test_update_missing_returns_none(self, ctx):
        assert db_manager.update_client(999, {"name": "Nobody"}) is None

    def test_delete_with_projects_conflicts(self, make_project):
        project = make_project()
        with pytest.raises(ConflictError, match="associated projects"):
            db_manager.delete_client(project.client_id)
        assert db_manager.get_client(project.client_id) is not None

    def test_delete_without_projects(self, make_client):
        client = make_client()
        assert db_manager.delete_client(client.id) is True
        assert db_manager.get_client(client.id) is None

    def test_delete_missing_returns_false(self, ctx):
        assert db_manager.delete_client(12345) is False

    def test_foreign_key_blocks_delete_at_commit(self, make_project):
        project = make_project()
        client = db_manager.get_client(project.client_id)

        db.session.delete(client)
        with pytest.raises(ConflictError, match="associated projects"):
            db_manager._commit(db_manager.CLIENT_CONFLICT)

        assert db_manager.get_client(project.client_id) is not None
        assert db_manager.get_project(project.id).client_id == project.client_id


class TestProjects:
    """Project CRUD, filters and delete protection."""

    def test_create_requires_existing_client(self, ctx):
        with pytest.raises(NotFoundError, match="Client not found"):
            db_manager.create_project({"title": "Orphan", "client_id": 42})

    def test_filter_by_status_and_client(self, make_client, make_project):
        acme = make_client()
        other = make_client(name="Other", email="other@example.com")
        active = make_project(client=acme)
        make_project(client=acme, status="completed")
        make_project(client=other)

        result = db_manager.get_projects(status=ProjectStatus.IN_PROGRESS, client_id=acme.id)
        assert [p.id for p in result] == [active.id]

    def test_list_carries_client(self, make_project):
        project = make_project()
        listed = db_manager.get_projects()[0]
        assert listed.id == project.id
        assert db_manager.project_to_dict(listed)["client"]["name"] == "Acme Ltd"

    def test_delete_with_tasks_conflicts(self, make_task):
        task = make_task()
        with pytest.raises(ConflictError, match="tasks or payments"):
            db_manager.delete_project(task.project_id)

    def test_delete_with_payments_conflicts(self, make_payment):
        payment = make_payment()
        with pytest.raises(ConflictError, match="tasks or payments"):
            db_manager.delete_project(payment.project_id)

    def test_delete_without_dependents(self, make_project):
        project = make_project()
        assert db_manager.delete_project(project.id) is True
        assert db_manager.get_project(project.id) is None

    @pytest.mark.parametrize("dependent", ["make_task", "make_payment"])
    def test_foreign_key_blocks_delete_at_commit(self, request, dependent):
        child = request.getfixturevalue(dependent)()
        project = db_manager.get_project(child.project_id)

        db.session.delete(project)
        with pytest.raises(ConflictError, match="tasks or payments"):
            db_manager._commit(db_manager.PROJECT_CONFLICT)

        assert db_manager.get_project(child.project_id) is not None

    def test_update_to_missing_client(self, make_project):
        project = make_project()
        with pytest.raises(NotFoundError):
            db_manager.update_project(project.id, {"client_id": 999})


class TestTasks:
    """Task completion timestamps and filters."""

    def test_complete_sets_completed_at(self, make_task):
        task = make_task()
        assert task.completed_at is None

        task = db_manager.update_task(task.id, {"is_completed": True})
        assert task.is_completed is True
        assert task.completed_at is not None

    def test_reopen_clears_completed_at(self, make_task):
        task = make_task(is_completed=True)
        assert task.completed_at is not None

        task = db_manager.update_task(task.id, {"is_completed": False})
        assert task.completed_at is None

    def test_repeated_complete_keeps_timestamp(self, make_task):
        task = make_task()
        first = db_manager.update_task(task.id, {"is_completed": True}).completed_at
        second = db_manager.update_task(task.id, {"is_completed": True}).completed_at
        assert first == second

    def test_unrelated_update_keeps_completed_at(self, make_task):
        task = make_task(is_completed=True)
        stamped = task.completed_at
        task = db_manager.update_task(task.id, {"title": "Renamed"})
        assert task.completed_at == stamped

    def test_due_today_filter(self, make_project, make_task):
        project = make_project()
        now_task = make_task(project=project, deadline=datetime.now())
        make_task(project=project, deadline=days_from_today(1))
        make_task(project=project)

        assert [t.id for t in db_manager.get_tasks(due_today=True)] == [now_task.id]

    def test_filter_by_completed_and_priority(self, make_project, make_task):
        project = make_project()
        high = make_task(project=project, priority="high")
        make_task(project=project, priority="high", is_completed=True)
        make_task(project=project, priority="low")

        result = db_manager.get_tasks(completed=False, priority="high")
        assert [t.id for t in result] == [high.id]

    def test_filter_by_project(self, make_project, make_task):
        one = make_project()
        two = make_project(client=one.client)
        task = make_task(project=two)
        make_task(project=one)
        assert [t.id for t in db_manager.get_tasks(project_id=two.id)] == [task.id]

    def test_delete(self, make_task):
        task = make_task()
        assert db_manager.delete_task(task.id) is True
        assert db_manager.delete_task(task.id) is False


class TestPayments:
    """Payment received timestamps and filters."""

    def test_received_sets_received_at(self, make_payment):
        payment = make_payment()
        assert payment.received_at is None

        payment = db_manager.update_payment(payment.id, {"status": PaymentStatus.RECEIVED})
        assert payment.received_at is not None

    def test_back_to_pending_clears_received_at(self, make_payment):
        payment = make_payment(status="received")
        assert payment.received_at is not None

        payment = db_manager.update_payment(payment.id, {"status": PaymentStatus.PENDING})
        assert payment.received_at is None

    def test_filter_by_status(self, make_project, make_payment):
        project = make_project()
        make_payment(project=project, status="received")
        pending = make_payment(project=project, invoice_number="INV-002")
        assert [p.id for p in db_manager.get_payments(status=PaymentStatus.PENDING)] == [pending.id]

    def test_amount_keeps_cents(self, make_payment):
        payment = make_payment(amount=Decimal("20.50"))
        assert db_manager.payment_to_dict(payment)["amount"] == "20.50"


class TestUpcoming:
    """Deadline and due-date windows."""

    def test_projects_due_within_window(self, make_client, make_project):
        client = make_client()
        soon = make_project(client=client, deadline=days_from_today(3))
        make_project(client=client, deadline=days_from_today(3), status="completed")
        make_project(client=client, deadline=days_from_today(10))
        make_project(client=client, deadline=days_from_today(-2))

        assert [p.id for p in db_manager.get_upcoming("project", 7)] == [soon.id]

    def test_payments_due_soonest_first(self, make_project, make_payment):
        project = make_project()
        later = make_payment(project=project, due_date=days_from_today(20))
        sooner = make_payment(project=project, due_date=days_from_today(2))
        make_payment(project=project, due_date=days_from_today(5), status="received")

        assert [p.id for p in db_manager.get_upcoming("payment", 30)] == [sooner.id, later.id]

    def test_rejects_unknown_kind(self, ctx):
        with pytest.raises(ValueError):
            db_manager.get_upcoming("task", 7)

    def test_rejects_non_positive_days(self, ctx):
        with pytest.raises(ValueError):
            db_manager.get_upcoming("project", 0)


class TestDashboardStats:
    """Aggregate counts and sums."""

    def test_empty_database(self, ctx):
        stats = db_manager.get_dashboard_stats()
        assert stats["activeProjectsCount"] == 0
        assert stats["pendingPaymentsSum"] == Decimal("0.00")
        assert stats["invoicesToSendCount"] == 0

    def test_pending_sum_is_decimal_exact(self, make_project, make_payment):
        project = make_project()
        for amount in ("10.00", "20.50", "5.25"):
            make_payment(project=project, amount=Decimal(amount))
        make_payment(project=project, amount=Decimal("99.99"), status="received")

        assert db_manager.get_dashboard_stats()["pendingPaymentsSum"] == Decimal("35.75")

    def test_payments_due_soon_sum(self, make_project, make_payment):
        project = make_project()
        make_payment(project=project, amount=Decimal("100.00"), due_date=days_from_today(5))
        make_payment(project=project, amount=Decimal("50.00"), due_date=days_from_today(45))
        make_payment(project=project, amount=Decimal("25.00"))

        stats = db_manager.get_dashboard_stats()
        assert stats["paymentsDueSoonSum"] == Decimal("100.00")
        assert stats["pendingPaymentsSum"] == Decimal("175.00")

    def test_invoices_to_send(self, make_client, make_project, make_payment):
        client = make_client()
        billed = make_project(client=client)
        make_project(client=client)
        make_payment(project=billed)

        assert db_manager.get_dashboard_stats()["invoicesToSendCount"] == 1

    def test_task_and_project_counts(self, make_client, make_project, make_task):
        client = make_client()
        active = make_project(client=client, deadline=days_from_today(2))
        make_project(client=client, status="on_hold", deadline=days_from_today(2))

        make_task(project=active, deadline=days_from_today(0))
        make_task(project=active, deadline=days_from_today(0), is_completed=True)
        make_task(project=active, priority="high", deadline=days_from_today(3))
        make_task(project=active, priority="high", deadline=days_from_today(4))
        make_task(project=active, priority="high", is_completed=True,
                  deadline=days_from_today(3))

        stats = db_manager.get_dashboard_stats()
        assert stats["activeProjectsCount"] == 1
        assert stats["projectsDueSoonCount"] == 1
        assert stats["tasksToday"] == 2
        assert stats["completedTasksToday"] == 1
        # two open high-priority tasks on the same project count twice
        assert stats["urgentProjectsCount"] == 2


class TestHelpers:

    @pytest.mark.parametrize("value,expected", [
        ("12.34", Decimal("12.34")),
        (Decimal("5"), Decimal("5")),
        (None, Decimal("0")),
        ("abc", Decimal("0")),
        ("NaN", Decimal("0")),
    ])
    def test_to_decimal(self, value, expected):
        assert db_manager.to_decimal(value) == expected

    def test_today_window_spans_one_day(self):
        start, end = db_manager.today_window()
        assert start.hour == start.minute == start.second == 0
        assert end - start == timedelta(hours=24)
        assert start <= datetime.now() < end


class TestSeedExportImport:
    """Demo data, JSON backup and CSV export."""

    def test_seed_only_into_empty_database(self, ctx):
        assert db_manager.seed_demo_data() is True
        assert Client.query.count() == 3
        assert Project.query.count() == 3
        assert Task.query.count() == 4
        assert Payment.query.count() == 3
        assert User.query.count() == 1
        assert User.query.first().password != "password123"

        assert db_manager.seed_demo_data() is False
        assert Client.query.count() == 3

    def test_failed_seed_leaves_database_empty(self, ctx, monkeypatch):
        def broken_payment(data, commit=True):
            raise RuntimeError("disk full")

        monkeypatch.setattr(db_manager, "create_payment", broken_payment)
        with pytest.raises(RuntimeError):
            db_manager.seed_demo_data()
        assert Client.query.count() == 0
        assert Project.query.count() == 0
        assert Task.query.count() == 0

        monkeypatch.undo()
        assert db_manager.seed_demo_data() is True
        assert Payment.query.count() == 3

    def test_export_then_import_restores_rows(self, ctx):
        db_manager.seed_demo_data()
        backup = db_manager.export_data()

        project = Project.query.first()
        db_manager.create_task({"title": "Extra", "project_id": project.id})
        assert Task.query.count() == 5

        ok, message = db_manager.import_data(backup)
        assert ok, message
        assert Task.query.count() == 4
        assert db_manager.export_data() == backup

    def test_import_failure_rolls_back(self, ctx):
        db_manager.seed_demo_data()
        ok, _ = db_manager.import_data({"clients": [{"id": 1}]})
        assert ok is False
        assert Client.query.count() == 3

    def test_export_csv(self, make_client):
        make_client(name="Comma, Inc")
        text = db_manager.export_csv("clients")
        header, row = text.strip().splitlines()
        assert header.startswith("id,name,email")
        assert '"Comma, Inc"' in row

    def test_export_csv_empty_table_has_header(self, ctx):
        assert db_manager.export_csv("payments").strip() == (
            "id,invoiceNumber,projectId,amount,paymentMethod,status,"
            "dueDate,receivedAt,notes,createdAt,updatedAt"
        )
