import logging
from typing import Optional, Dict, Any, List

from todo_store import Identity, TodoStore

logger = logging.getLogger(__name__)


class TodoError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.message}


class Unauthorized(TodoError):
    status_code = 401

    def __init__(self, message: str = 'Unauthorized') -> None:
        super().__init__(message)


class ValidationError(TodoError):
    status_code = 400

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        return {'error': self.message, 'field': self.field}


class NotFound(TodoError):
    """Raised for missing tasks and for tasks owned by someone else alike."""

    status_code = 404

    def __init__(self) -> None:
        super().__init__('Todo not found')


class UpstreamError(TodoError):
    status_code = 500


def normalize_email(value: Optional[str]) -> str:
    return (value or '').strip().lower()


def validate_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError('name', 'Name is required and must be a string')
    return value.strip()


# SQLite INTEGER is a signed 64-bit value
PRIORITY_MIN = -2 ** 63
PRIORITY_MAX = 2 ** 63 - 1


def validate_priority(value: Any) -> int:
    # bool is an int subclass, but true/false is not a priority
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError('priority', 'Priority must be a number if provided')
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError('priority', 'Priority must be a whole number')
        value = int(value)
    if not PRIORITY_MIN <= value <= PRIORITY_MAX:
        raise ValidationError('priority', 'Priority is out of range')
    return value


def validate_completed(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError('completed', 'Completed must be a boolean if provided')
    return value


class TodoService:
    """Task operations scoped to the caller's identity.

    Reads and writes only ever touch the caller's own tasks. The configured admin
    email may list every user's tasks, but updates and deletes still go through
    the owner filter, so an admin can only change their own tasks.
    """

    def __init__(self, store: TodoStore, admin_email: Optional[str] = None) -> None:
        self.store = store
        self.admin_email = normalize_email(admin_email)

    def is_admin(self, identity: Optional[Identity]) -> bool:
        if identity is None or not self.admin_email:
            return False
        return normalize_email(identity.email) == self.admin_email

    @staticmethod
    def require_identity(identity: Optional[Identity]) -> Identity:
        if identity is None:
            raise Unauthorized()
        return identity

    def list_todos(self, identity: Optional[Identity]) -> List[Dict[str, Any]]:
        identity = self.require_identity(identity)
        if self.is_admin(identity):
            todos = self.store.list_tasks(with_owner=True)
            logger.info('Admin %s listed %d todos across all users', identity.id, len(todos))
            return todos
        return self.store.list_tasks(owner_id=identity.id)

    def create_todo(self, identity: Optional[Identity], payload: Dict[str, Any]) -> Dict[str, Any]:
        identity = self.require_identity(identity)
        name = validate_name(payload.get('name'))
        priority = 0
        if 'priority' in payload:
            priority = validate_priority(payload['priority'])
        todo = self.store.create_task(identity.id, name, priority)
        logger.info('User %s created todo %s', identity.id, todo['id'])
        return todo

    def update_todo(self, identity: Optional[Identity], todo_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        identity = self.require_identity(identity)
        patch: Dict[str, Any] = {}
        if payload.get('name') is not None:
            patch['name'] = validate_name(payload['name'])
        if payload.get('completed') is not None:
            patch['completed'] = validate_completed(payload['completed'])
        if 'priority' in payload:
            patch['priority'] = validate_priority(payload['priority'])

        todo = self.store.update_task(todo_id, identity.id, patch)
        if todo is None:
            raise NotFound()
        return todo

    def delete_todo(self, identity: Optional[Identity], todo_id: str) -> None:
        identity = self.require_identity(identity)
        if not self.store.delete_task(todo_id, identity.id):
            raise NotFound()
        logger.info('User %s deleted todo %s', identity.id, todo_id)
