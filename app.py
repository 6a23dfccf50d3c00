import datetime
import io
import json
import os

import click
from flask import Blueprint, Flask, jsonify, request, send_file
from flask_cors import CORS
from flask_migrate import Migrate, upgrade
from pydantic import ValidationError as PydanticValidationError
from werkzeug.exceptions import HTTPException

import db_manager
from errors import AppError, ConflictError, NotFoundError, ValidationError
from logging_config import get_logger, setup_logging
from models import PaymentStatus, ProjectStatus, TaskPriority, db
from schemas import (
    MAX_ID,
    ClientInsert,
    ClientUpdate,
    PaymentInsert,
    PaymentUpdate,
    ProjectInsert,
    ProjectUpdate,
    TaskInsert,
    TaskUpdate,
)

logger = get_logger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

api = Blueprint('api', __name__, url_prefix='/api')
migrate = Migrate()


# Database Config
def get_db_uri():
    if os.environ.get('DATABASE_URL'):
        return os.environ['DATABASE_URL']

    # In production (Docker), use the mapped 'data' volume
    if os.environ.get('FLASK_ENV') == 'production':
        return 'sqlite:///' + os.path.join('/app', 'data', 'freelance.db')

    data_dir = os.path.join(BASE_DIR, 'data')
    os.makedirs(data_dir, exist_ok=True)
    return 'sqlite:///' + os.path.join(data_dir, 'freelance.db')


# Request parsing

def parse_id(value, entity):
    try:
        record_id = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {entity} ID")
    # Nothing can be stored outside the 64-bit INTEGER range
    if not 1 <= record_id <= MAX_ID:
        raise NotFoundError(entity.title())
    return record_id


def parse_optional_int(value):
    # Unparsable or out-of-range ids in query strings are ignored rather than rejected
    try:
        number = int(value) if value else None
    except ValueError:
        return None
    if number is not None and abs(number) > MAX_ID:
        return None
    return number


def parse_enum(value, enum_cls, name):
    if not value or value == 'all':
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {name}: {value}")


def parse_days(value, default):
    if value is None:
        return default
    try:
        days = int(value)
    except ValueError:
        raise ValidationError("days must be an integer")
    if days < 1:
        raise ValidationError("days must be at least 1")
    return days


def validate_body(schema, partial=False):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError(errors=[{
            'path': [],
            'message': 'Request body must be a JSON object',
            'code': 'invalid_type',
        }])
    try:
        parsed = schema.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc)
    return parsed.model_dump(exclude_unset=partial)


# Routes

@api.route('')
def index():
    return jsonify({'status': 'API is running'})


@api.route('/dashboard/stats')
def dashboard_stats():
    stats = db_manager.get_dashboard_stats()
    stats['pendingPaymentsSum'] = float(stats['pendingPaymentsSum'])
    stats['paymentsDueSoonSum'] = float(stats['paymentsDueSoonSum'])
    return jsonify(stats)


@api.route('/clients', methods=['GET', 'POST'])
def clients():
    if request.method == 'POST':
        data = validate_body(ClientInsert)
        client = db_manager.create_client(data)
        return jsonify(db_manager.client_to_dict(client)), 201

    return jsonify([db_manager.client_to_dict(c) for c in db_manager.get_clients()])


@api.route('/clients/<client_id>', methods=['GET', 'PUT', 'DELETE'])
def manage_client(client_id):
    client_id = parse_id(client_id, 'client')

    if request.method == 'DELETE':
        if not db_manager.delete_client(client_id):
            raise NotFoundError('Client')
        return jsonify({'message': 'Client deleted successfully'})

    if request.method == 'PUT':
        data = validate_body(ClientUpdate, partial=True)
        client = db_manager.update_client(client_id, data)
    else:
        client = db_manager.get_client(client_id)

    if client is None:
        raise NotFoundError('Client')
    return jsonify(db_manager.client_to_dict(client))


@api.route('/projects', methods=['GET', 'POST'])
def projects():
    if request.method == 'POST':
        data = validate_body(ProjectInsert)
        project = db_manager.create_project(data)
        return jsonify(db_manager.project_to_dict(project, with_client=False)), 201

    projects = db_manager.get_projects(
        status=parse_enum(request.args.get('status'), ProjectStatus, 'status'),
        client_id=parse_optional_int(request.args.get('clientId')),
    )
    return jsonify([db_manager.project_to_dict(p) for p in projects])


@api.route('/projects/upcoming')
def upcoming_projects():
    days = parse_days(request.args.get('days'), 7)
    return jsonify([db_manager.project_to_dict(p) for p in db_manager.get_upcoming('project', days)])


@api.route('/projects/<project_id>', methods=['GET', 'PUT', 'DELETE'])
def manage_project(project_id):
    project_id = parse_id(project_id, 'project')

    if request.method == 'DELETE':
        if not db_manager.delete_project(project_id):
            raise NotFoundError('Project')
        return jsonify({'message': 'Project deleted successfully'})

    if request.method == 'PUT':
        data = validate_body(ProjectUpdate, partial=True)
        project = db_manager.update_project(project_id, data)
        if project is None:
            raise NotFoundError('Project')
        return jsonify(db_manager.project_to_dict(project, with_client=False))

    project = db_manager.get_project(project_id)
    if project is None:
        raise NotFoundError('Project')
    return jsonify(db_manager.project_to_dict(project))


@api.route('/tasks', methods=['GET', 'POST'])
def tasks():
    if request.method == 'POST':
        data = validate_body(TaskInsert)
        task = db_manager.create_task(data)
        return jsonify(db_manager.task_to_dict(task, with_project=False)), 201

    completed = request.args.get('completed')
    tasks = db_manager.get_tasks(
        completed={'true': True, 'false': False}.get(completed),
        priority=parse_enum(request.args.get('priority'), TaskPriority, 'priority'),
        project_id=parse_optional_int(request.args.get('projectId')),
        due_today=request.args.get('dueToday') == 'true',
    )
    return jsonify([db_manager.task_to_dict(t) for t in tasks])


@api.route('/tasks/<task_id>', methods=['GET', 'PUT', 'DELETE'])
def manage_task(task_id):
    task_id = parse_id(task_id, 'task')

    if request.method == 'DELETE':
        if not db_manager.delete_task(task_id):
            raise NotFoundError('Task')
        return jsonify({'message': 'Task deleted successfully'})

    if request.method == 'PUT':
        data = validate_body(TaskUpdate, partial=True)
        task = db_manager.update_task(task_id, data)
        if task is None:
            raise NotFoundError('Task')
        return jsonify(db_manager.task_to_dict(task, with_project=False))

    task = db_manager.get_task(task_id)
    if task is None:
        raise NotFoundError('Task')
    return jsonify(db_manager.task_to_dict(task))


@api.route('/payments', methods=['GET', 'POST'])
def payments():
    if request.method == 'POST':
        data = validate_body(PaymentInsert)
        payment = db_manager.create_payment(data)
        return jsonify(db_manager.payment_to_dict(payment, with_project=False)), 201

    payments = db_manager.get_payments(
        status=parse_enum(request.args.get('status'), PaymentStatus, 'status'),
        project_id=parse_optional_int(request.args.get('projectId')),
    )
    return jsonify([db_manager.payment_to_dict(p) for p in payments])


@api.route('/payments/upcoming')
def upcoming_payments():
    days = parse_days(request.args.get('days'), 30)
    return jsonify([db_manager.payment_to_dict(p) for p in db_manager.get_upcoming('payment', days)])


@api.route('/payments/<payment_id>', methods=['GET', 'PUT', 'DELETE'])
def manage_payment(payment_id):
    payment_id = parse_id(payment_id, 'payment')

    if request.method == 'DELETE':
        if not db_manager.delete_payment(payment_id):
            raise NotFoundError('Payment')
        return jsonify({'message': 'Payment deleted successfully'})

    if request.method == 'PUT':
        data = validate_body(PaymentUpdate, partial=True)
        payment = db_manager.update_payment(payment_id, data)
        if payment is None:
            raise NotFoundError('Payment')
        return jsonify(db_manager.payment_to_dict(payment, with_project=False))

    payment = db_manager.get_payment(payment_id)
    if payment is None:
        raise NotFoundError('Payment')
    return jsonify(db_manager.payment_to_dict(payment))


@api.route('/export')
def export_data():
    data = db_manager.export_data()
    mem = io.BytesIO()
    mem.write(json.dumps(data, indent=4).encode('utf-8'))
    mem.seek(0)

    return send_file(
        mem,
        as_attachment=True,
        download_name=f"freelance_data_{datetime.date.today()}.json",
        mimetype='application/json'
    )


@api.route('/export/<entity>.csv')
def export_csv(entity):
    if entity not in db_manager.EXPORTERS:
        raise NotFoundError('Export')
    mem = io.BytesIO(db_manager.export_csv(entity).encode('utf-8'))

    return send_file(
        mem,
        as_attachment=True,
        download_name=f"{entity}_{datetime.date.today()}.csv",
        mimetype='text/csv'
    )


@api.route('/import', methods=['POST'])
def import_data():
    if 'file' not in request.files:
        raise ValidationError("No file uploaded")

    file = request.files['file']
    if file.filename == '':
        raise ValidationError("No file selected")

    try:
        data = json.load(file)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON file")
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON file")

    success, message = db_manager.import_data(data)
    if not success:
        raise AppError(f"Error importing data: {message}")
    return jsonify({"message": message})


# Error handlers

def register_error_handlers(app):
    @app.errorhandler(AppError)
    def handle_app_error(error):
        if isinstance(error, ConflictError):
            logger.warning("Conflict on %s %s: %s", request.method, request.path, error.message)
        elif error.status_code >= 500:
            logger.error("Failed %s %s: %s", request.method, request.path, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'message': error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        logger.exception("Unexpected error on %s %s", request.method, request.path)
        db.session.rollback()
        return jsonify({'message': 'Internal server error'}), 500


def init_database(app):
    # In non-test environments, apply migrations if they exist
    migration_dir = os.path.join(BASE_DIR, 'migrations')
    with app.app_context():
        if os.path.exists(migration_dir) and not app.config.get('TESTING'):
            upgrade(directory=migration_dir)
            logger.info("Database migrated successfully.")
        else:
            db.create_all()
            logger.info("Database tables created using db.create_all().")


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_mapping(
        SQLALCHEMY_DATABASE_URI=None,
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        LOG_LEVEL=os.environ.get('LOG_LEVEL', 'INFO'),
    )
    if test_config is not None:
        app.config.update(test_config)
    if not app.config['SQLALCHEMY_DATABASE_URI']:
        app.config['SQLALCHEMY_DATABASE_URI'] = get_db_uri()

    setup_logging(app.config['LOG_LEVEL'])

    db.init_app(app)
    migrate.init_app(app, db)
    CORS(app)  # Enable CORS for all routes

    app.register_blueprint(api)
    register_error_handlers(app)

    @app.cli.command('seed')
    def seed_command():
        """Load demo clients, projects, tasks and payments."""
        if db_manager.seed_demo_data():
            click.echo("Seeding completed successfully!")
        else:
            click.echo("Database already has data, skipping seed")

    init_database(app)
    return app


if __name__ == '__main__':
    create_app().run(debug=False, port=5000)
