from typing import Optional

from sqlalchemy.orm import Session

from app.models import Employee

DEFAULT_DEPARTMENT = "Unknown"
DEFAULT_DISPLAY_NAME = "Unknown User"


def get_profile(db: Session, user_id: str) -> Optional[Employee]:
    return db.query(Employee).filter(Employee.user_id == user_id).first()


def lookup_or_register(db: Session, user_id: str, display_name: Optional[str] = None) -> Employee:
    """Find employee by chat user id or register a new one."""
    employee = get_profile(db, user_id)

    if not employee:
        employee = Employee(
            user_id=user_id,
            display_name=display_name or DEFAULT_DISPLAY_NAME,
            department=DEFAULT_DEPARTMENT,
            active=True,
        )
        db.add(employee)
        db.flush()
    elif display_name and employee.display_name in (None, "", DEFAULT_DISPLAY_NAME):
        employee.display_name = display_name
        db.flush()

    return employee
