import csv
import io
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from errors import ConflictError, NotFoundError
from logging_config import get_logger
from models import (
    Client,
    Payment,
    PaymentStatus,
    Project,
    ProjectStatus,
    Task,
    TaskPriority,
    User,
    db,
)
from schemas import ClientInsert, PaymentInsert, ProjectInsert, TaskInsert, UserInsert

logger = get_logger(__name__)

CLIENT_CONFLICT = "Cannot delete client with associated projects"
PROJECT_CONFLICT = "Cannot delete project with associated tasks or payments"

CENTS = Decimal("0.01")


# Helpers

def start_of_today():
    return datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)


def today_window():
    """Return the half-open ``[midnight, midnight + 24h)`` range for today, local time."""
    today = start_of_today()
    return today, today + timedelta(hours=24)


def to_decimal(value):
    """Parse an amount as Decimal; anything unparsable counts as zero."""
    if value is None:
        return Decimal("0")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return amount if amount.is_finite() else Decimal("0")


def _commit(conflict_message=None):
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        if conflict_message:
            raise ConflictError(conflict_message) from exc
        raise


def _save(record, commit):
    db.session.add(record)
    if commit:
        _commit()
    else:
        # Assigns the id while leaving the transaction open for the caller
        db.session.flush()


def _require(model, record_id, entity):
    if db.session.get(model, record_id) is None:
        raise NotFoundError(entity)


def _get_for_update(model, record_id):
    # Lock the row first so dependents cannot be attached while we check them
    locked = db.session.execute(
        db.select(model.id).where(model.id == record_id).with_for_update()
    ).scalar_one_or_none()
    if locked is None:
        return None
    return db.session.get(model, record_id)


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return str(to_decimal(value).quantize(CENTS)) if value is not None else None


# Serializers

def client_to_dict(client):
    return {
        'id': client.id,
        'name': client.name,
        'email': client.email,
        'phone': client.phone,
        'company': client.company,
        'notes': client.notes,
        'createdAt': _iso(client.created_at),
        'updatedAt': _iso(client.updated_at),
    }


def project_to_dict(project, with_client=True):
    data = {
        'id': project.id,
        'title': project.title,
        'description': project.description,
        'clientId': project.client_id,
        'status': project.status.value,
        'deadline': _iso(project.deadline),
        'amount': _money(project.amount),
        'notes': project.notes,
        'createdAt': _iso(project.created_at),
        'updatedAt': _iso(project.updated_at),
    }
    if with_client:
        data['client'] = client_to_dict(project.client) if project.client else None
    return data


def task_to_dict(task, with_project=True):
    data = {
        'id': task.id,
        'title': task.title,
        'description': task.description,
        'projectId': task.project_id,
        'priority': task.priority.value,
        'deadline': _iso(task.deadline),
        'isCompleted': task.is_completed,
        'completedAt': _iso(task.completed_at),
        'createdAt': _iso(task.created_at),
        'updatedAt': _iso(task.updated_at),
    }
    if with_project:
        data['project'] = project_to_dict(task.project) if task.project else None
    return data


def payment_to_dict(payment, with_project=True):
    data = {
        'id': payment.id,
        'invoiceNumber': payment.invoice_number,
        'projectId': payment.project_id,
        'amount': _money(payment.amount),
        'paymentMethod': payment.payment_method,
        'status': payment.status.value,
        'dueDate': _iso(payment.due_date),
        'receivedAt': _iso(payment.received_at),
        'notes': payment.notes,
        'createdAt': _iso(payment.created_at),
        'updatedAt': _iso(payment.updated_at),
    }
    if with_project:
        data['project'] = project_to_dict(payment.project) if payment.project else None
    return data


# Clients

def get_clients():
    return Client.query.order_by(Client.created_at.desc(), Client.id.desc()).all()


def get_client(client_id):
    return db.session.get(Client, client_id)


def create_client(data, commit=True):
    now = datetime.now()
    client = Client(**data, created_at=now, updated_at=now)
    _save(client, commit)
    logger.info("Created client %s", client.id)
    return client


def update_client(client_id, data):
    client = db.session.get(Client, client_id)
    if client is None:
        return None
    for key, value in data.items():
        setattr(client, key, value)
    client.updated_at = datetime.now()
    _commit()
    return client


def delete_client(client_id):
    client = _get_for_update(Client, client_id)
    if client is None:
        return False

    has_projects = db.session.query(Project.id).filter(Project.client_id == client_id).first()
    if has_projects is not None:
        db.session.rollback()
        raise ConflictError(CLIENT_CONFLICT)

    db.session.delete(client)
    _commit(CLIENT_CONFLICT)
    logger.info("Deleted client %s", client_id)
    return True


# Projects

def get_projects(status=None, client_id=None):
    query = Project.query
    if status is not None:
        query = query.filter(Project.status == status)
    if client_id is not None:
        query = query.filter(Project.client_id == client_id)
    return query.order_by(Project.created_at.desc(), Project.id.desc()).all()


def get_project(project_id):
    return db.session.get(Project, project_id)


def create_project(data, commit=True):
    _require(Client, data['client_id'], 'Client')
    now = datetime.now()
    project = Project(**data, created_at=now, updated_at=now)
    _save(project, commit)
    logger.info("Created project %s for client %s", project.id, project.client_id)
    return project


def update_project(project_id, data):
    project = db.session.get(Project, project_id)
    if project is None:
        return None
    if 'client_id' in data:
        _require(Client, data['client_id'], 'Client')
    for key, value in data.items():
        setattr(project, key, value)
    project.updated_at = datetime.now()
    _commit()
    return project


def delete_project(project_id):
    project = _get_for_update(Project, project_id)
    if project is None:
        return False

    has_tasks = db.session.query(Task.id).filter(Task.project_id == project_id).first()
    has_payments = db.session.query(Payment.id).filter(Payment.project_id == project_id).first()
    if has_tasks is not None or has_payments is not None:
        db.session.rollback()
        raise ConflictError(PROJECT_CONFLICT)

    db.session.delete(project)
    _commit(PROJECT_CONFLICT)
    logger.info("Deleted project %s", project_id)
    return True


# Tasks

def get_tasks(completed=None, priority=None, project_id=None, due_today=False):
    query = Task.query
    if completed is not None:
        query = query.filter(Task.is_completed == completed)
    if priority is not None:
        query = query.filter(Task.priority == priority)
    if project_id is not None:
        query = query.filter(Task.project_id == project_id)
    if due_today:
        start, end = today_window()
        query = query.filter(Task.deadline >= start, Task.deadline < end)
    return query.order_by(Task.created_at.desc(), Task.id.desc()).all()


def get_task(task_id):
    return db.session.get(Task, task_id)


def create_task(data, commit=True):
    _require(Project, data['project_id'], 'Project')
    now = datetime.now()
    task = Task(**data, created_at=now, updated_at=now)
    task.completed_at = now if task.is_completed else None
    _save(task, commit)
    return task


def update_task(task_id, data):
    task = db.session.get(Task, task_id)
    if task is None:
        return None
    if 'project_id' in data:
        _require(Project, data['project_id'], 'Project')

    now = datetime.now()
    was_completed = task.is_completed
    for key, value in data.items():
        setattr(task, key, value)

    if 'is_completed' in data:
        if task.is_completed and not was_completed:
            task.completed_at = now
        elif not task.is_completed:
            task.completed_at = None
    task.updated_at = now
    _commit()
    return task


def delete_task(task_id):
    task = db.session.get(Task, task_id)
    if task is None:
        return False
    db.session.delete(task)
    _commit()
    return True


# Payments

def get_payments(status=None, project_id=None):
    query = Payment.query
    if status is not None:
        query = query.filter(Payment.status == status)
    if project_id is not None:
        query = query.filter(Payment.project_id == project_id)
    return query.order_by(Payment.created_at.desc(), Payment.id.desc()).all()


def get_payment(payment_id):
    return db.session.get(Payment, payment_id)


def create_payment(data, commit=True):
    _require(Project, data['project_id'], 'Project')
    now = datetime.now()
    payment = Payment(**data, created_at=now, updated_at=now)
    payment.received_at = now if payment.status == PaymentStatus.RECEIVED else None
    _save(payment, commit)
    logger.info("Created payment %s (%s)", payment.id, payment.invoice_number)
    return payment


def update_payment(payment_id, data):
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        return None
    if 'project_id' in data:
        _require(Project, data['project_id'], 'Project')

    now = datetime.now()
    previous_status = payment.status
    for key, value in data.items():
        setattr(payment, key, value)

    if 'status' in data:
        if payment.status == PaymentStatus.RECEIVED and previous_status != PaymentStatus.RECEIVED:
            payment.received_at = now
        elif payment.status == PaymentStatus.PENDING:
            payment.received_at = None
    payment.updated_at = now
    _commit()
    return payment


def delete_payment(payment_id):
    payment = db.session.get(Payment, payment_id)
    if payment is None:
        return False
    db.session.delete(payment)
    _commit()
    return True


# Deadlines and dashboard

UPCOMING = {
    'project': (Project, Project.deadline, ProjectStatus.IN_PROGRESS),
    'payment': (Payment, Payment.due_date, PaymentStatus.PENDING),
}


def get_upcoming(kind, days):
    """Open projects (or pending payments) whose deadline (or due date) falls
    within ``[today, today + days)``, soonest first."""
    if kind not in UPCOMING:
        raise ValueError(f"Unknown kind: {kind}")
    if days < 1:
        raise ValueError("days must be positive")

    model, date_column, open_status = UPCOMING[kind]
    today = start_of_today()
    return model.query.filter(
        date_column >= today,
        date_column < today + timedelta(days=days),
        model.status == open_status,
    ).order_by(date_column.asc(), model.id.asc()).all()


def _sum_amounts(query):
    total = Decimal("0")
    for (amount,) in query.with_entities(Payment.amount):
        total += to_decimal(amount)
    return total.quantize(CENTS)


def get_dashboard_stats():
    today, tomorrow = today_window()
    in_seven_days = today + timedelta(days=7)
    in_thirty_days = today + timedelta(days=30)

    active_projects = Project.query.filter(Project.status == ProjectStatus.IN_PROGRESS)
    today_tasks = Task.query.filter(Task.deadline >= today, Task.deadline < tomorrow)
    pending_payments = Payment.query.filter(Payment.status == PaymentStatus.PENDING)

    projects_due_soon = active_projects.filter(
        Project.deadline >= today, Project.deadline < in_seven_days
    )
    # Counts tasks, not distinct projects
    urgent_tasks = Task.query.filter(
        Task.priority == TaskPriority.HIGH,
        Task.is_completed.is_(False),
        Task.deadline >= today,
        Task.deadline < in_seven_days,
    )
    payments_due_soon = pending_payments.filter(
        Payment.due_date >= today, Payment.due_date < in_thirty_days
    )
    projects_without_payments = Project.query.filter(~Project.payments.any())

    return {
        'activeProjectsCount': active_projects.count(),
        'tasksToday': today_tasks.count(),
        'completedTasksToday': today_tasks.filter(Task.is_completed.is_(True)).count(),
        'projectsDueSoonCount': projects_due_soon.count(),
        'urgentProjectsCount': urgent_tasks.count(),
        'pendingPaymentsSum': _sum_amounts(pending_payments),
        'paymentsDueSoonSum': _sum_amounts(payments_due_soon),
        'invoicesToSendCount': projects_without_payments.count(),
    }


# Users

def create_user(data, commit=True):
    user = User(username=data['username'], password=generate_password_hash(data['password']))
    _save(user, commit)
    return user


# Seed, export and import

def seed_demo_data():
    """Load a small demo data set into an empty database.

    Returns False without touching anything when clients already exist.
    All rows are written in one transaction, so a failure leaves the
    database empty and the seed can simply be run again.
    """
    if Client.query.first() is not None:
        logger.info("Database already has data, skipping seed")
        return False

    logger.info("Seeding database...")
    try:
        counts = _add_demo_rows(datetime.now())
        _commit()
    except Exception:
        db.session.rollback()
        logger.exception("Seeding failed")
        raise

    logger.info("Seeded %d clients, %d projects, %d tasks, %d payments", *counts)
    return True


def _add_demo_rows(now):
    clients = [
        create_client(ClientInsert.model_validate(c).model_dump(), commit=False)
        for c in (
            {'name': "Tecnosoft SRL", 'email': "info@tecnosoft.com", 'phone': "+39 123 456 7890",
             'company': "Tecnosoft SRL", 'notes': "E-commerce company"},
            {'name': "Digital Marketing Pro", 'email': "contact@digitalmarketingpro.com",
             'phone': "+39 234 567 8901", 'company': "Digital Marketing Pro",
             'notes': "Digital marketing agency"},
            {'name': "Innovative Solutions", 'email': "hello@innovative-solutions.com",
             'phone': "+39 345 678 9012", 'company': "Innovative Solutions",
             'notes': "Mobile app development company"},
        )
    ]

    projects = [
        create_project(ProjectInsert.model_validate(p).model_dump(), commit=False)
        for p in (
            {'title': "E-commerce Redesign", 'clientId': clients[0].id, 'status': "in_progress",
             'description': "Full responsive redesign of the online shop with UX improvements.",
             'deadline': now + timedelta(days=9), 'amount': "3500.00",
             'notes': "Homepage, catalogue and checkout"},
            {'title': "Company Blog", 'clientId': clients[1].id, 'status': "completed",
             'description': "WordPress blog with a custom theme and newsletter integration.",
             'deadline': now - timedelta(days=6), 'amount': "1800.00",
             'notes': "Includes 5 launch articles"},
            {'title': "Mobile App", 'clientId': clients[2].id, 'status': "on_hold",
             'description': "React Native inventory app with cloud sync.",
             'deadline': now + timedelta(days=55), 'amount': "5200.00",
             'notes': "Waiting for design approval"},
        )
    ]

    tasks = [
        create_task(TaskInsert.model_validate(t).model_dump(), commit=False)
        for t in (
            {'title': "Build homepage", 'projectId': projects[0].id, 'priority': "high",
             'description': "Finish the responsive homepage layout and animations.",
             'deadline': now, 'isCompleted': False},
            {'title': "SEO pass", 'projectId': projects[1].id, 'priority': "medium",
             'description': "Meta tags and image optimisation for the blog.",
             'deadline': now + timedelta(days=1), 'isCompleted': False},
            {'title': "Client call", 'projectId': projects[2].id, 'priority': "low",
             'description': "Video call about the mobile app requirements.",
             'deadline': now - timedelta(days=1), 'isCompleted': True},
            {'title': "Database setup", 'projectId': projects[0].id, 'priority': "low",
             'description': "Configure the database for the e-commerce project.",
             'deadline': now + timedelta(days=3), 'isCompleted': False},
        )
    ]

    payments = [
        create_payment(PaymentInsert.model_validate(p).model_dump(), commit=False)
        for p in (
            {'invoiceNumber': "INV-001", 'projectId': projects[0].id, 'amount': "1500.00",
             'paymentMethod': "Bank Transfer", 'status': "received", 'notes': "Down payment"},
            {'invoiceNumber': "INV-002", 'projectId': projects[1].id, 'amount': "850.00",
             'paymentMethod': "PayPal", 'status': "pending",
             'dueDate': now + timedelta(days=9), 'notes': "First installment"},
            {'invoiceNumber': "INV-003", 'projectId': projects[2].id, 'amount': "1200.00",
             'paymentMethod': "Bank Transfer", 'status': "pending",
             'dueDate': now + timedelta(days=25), 'notes': "Down payment"},
        )
    ]

    if User.query.first() is None:
        user = create_user(
            UserInsert.model_validate({'username': "marco", 'password': "password123"}).model_dump(),
            commit=False,
        )
        logger.info("Created default user: %s", user.username)

    return len(clients), len(projects), len(tasks), len(payments)


EXPORTERS = {
    'clients': (Client, client_to_dict),
    'projects': (Project, lambda p: project_to_dict(p, with_client=False)),
    'tasks': (Task, lambda t: task_to_dict(t, with_project=False)),
    'payments': (Payment, lambda p: payment_to_dict(p, with_project=False)),
}


def export_data():
    """Export all data to a dictionary."""
    return {
        name: [serialize(row) for row in model.query.order_by(model.id).all()]
        for name, (model, serialize) in EXPORTERS.items()
    }


def export_csv(entity):
    """Export one table as CSV text. Raises KeyError for unknown tables."""
    model, serialize = EXPORTERS[entity]
    rows = [serialize(row) for row in model.query.order_by(model.id).all()]
    fieldnames = list(rows[0].keys()) if rows else _csv_header(entity)

    out = io.StringIO()
    writer = csv.DictWriter(out, fieldnames=fieldnames)
    writer.writeheader()
    writer.writerows(rows)
    return out.getvalue()


def _csv_header(entity):
    columns = EXPORTERS[entity][0].__table__.columns
    return [_camel(column.name) for column in columns]


def _camel(name):
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


def _parse_dt(value):
    return datetime.fromisoformat(value) if value else None


def import_data(data):
    """Import data from dictionary, replacing existing data."""
    try:
        # Children first so the foreign keys never dangle
        Payment.query.delete()
        Task.query.delete()
        Project.query.delete()
        Client.query.delete()

        for c in data.get('clients', []):
            db.session.add(Client(
                id=c['id'],
                name=c['name'],
                email=c['email'],
                phone=c.get('phone'),
                company=c.get('company'),
                notes=c.get('notes'),
                created_at=_parse_dt(c.get('createdAt')) or datetime.now(),
                updated_at=_parse_dt(c.get('updatedAt')) or datetime.now(),
            ))
        db.session.flush()

        for p in data.get('projects', []):
            db.session.add(Project(
                id=p['id'],
                title=p['title'],
                description=p.get('description'),
                client_id=p['clientId'],
                status=ProjectStatus(p.get('status') or 'in_progress'),
                deadline=_parse_dt(p.get('deadline')),
                amount=to_decimal(p['amount']) if p.get('amount') is not None else None,
                notes=p.get('notes'),
                created_at=_parse_dt(p.get('createdAt')) or datetime.now(),
                updated_at=_parse_dt(p.get('updatedAt')) or datetime.now(),
            ))
        db.session.flush()

        for t in data.get('tasks', []):
            db.session.add(Task(
                id=t['id'],
                title=t['title'],
                description=t.get('description'),
                project_id=t['projectId'],
                priority=TaskPriority(t.get('priority') or 'medium'),
                deadline=_parse_dt(t.get('deadline')),
                is_completed=bool(t.get('isCompleted')),
                completed_at=_parse_dt(t.get('completedAt')),
                created_at=_parse_dt(t.get('createdAt')) or datetime.now(),
                updated_at=_parse_dt(t.get('updatedAt')) or datetime.now(),
            ))

        for p in data.get('payments', []):
            db.session.add(Payment(
                id=p['id'],
                invoice_number=p['invoiceNumber'],
                project_id=p['projectId'],
                amount=to_decimal(p.get('amount')),
                payment_method=p.get('paymentMethod'),
                status=PaymentStatus(p.get('status') or 'pending'),
                due_date=_parse_dt(p.get('dueDate')),
                received_at=_parse_dt(p.get('receivedAt')),
                notes=p.get('notes'),
                created_at=_parse_dt(p.get('createdAt')) or datetime.now(),
                updated_at=_parse_dt(p.get('updatedAt')) or datetime.now(),
            ))

        db.session.commit()
        return True, "Data imported successfully."

    except Exception as e:
        db.session.rollback()
        logger.exception("Import failed")
        return False, str(e)
