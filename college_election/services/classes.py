# college_election/services/classes.py

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from college_election import db
from college_election.audit.audit_logger import audit_logger
from college_election.database.models import Election, LogAction, LogStatus, Role, SchoolClass, User
from college_election.database.queries import paginate
from college_election.errors import (
    ClassHasElections, ClassHasStudents, DuplicateClassName, NotFoundError, ValidationError,
)
from college_election.security.input_validator import InputValidator


class ClassRegistry:
    def __init__(self):
        self.validator = InputValidator()

    def get_class(self, class_id):
        school_class = db.session.get(SchoolClass, class_id)
        if school_class is None:
            raise NotFoundError("Class not found")
        return school_class

    def _name_taken(self, name, exclude_id=None):
        query = db.session.query(SchoolClass.id).filter(SchoolClass.name == name)
        if exclude_id is not None:
            query = query.filter(SchoolClass.id != exclude_id)
        return query.first() is not None

    def _class_teacher_id(self, teacher_id):
        if teacher_id in (None, ''):
            return None
        teacher_id = self.validator.parse_int(teacher_id, 'class teacher')
        teacher = db.session.get(User, teacher_id)
        if teacher is None or teacher.role != Role.TEACHER or not teacher.active:
            raise ValidationError("Class teacher must be an active teacher")
        return teacher.id

    def _year(self, year):
        year = self.validator.parse_int(year, 'year')
        if year < 1 or year > 10:
            raise ValidationError("Invalid year")
        return year

    def _commit(self):
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateClassName()

    def create_class(self, actor, name, department, year, section, class_teacher_id=None):
        self.validator.require({'name': name, 'department': department, 'year': year, 'section': section},
                               'name', 'department', 'year', 'section')
        name = self.validator.sanitize_plain(name, 100)
        if self._name_taken(name):
            raise DuplicateClassName()

        school_class = SchoolClass(
            name=name,
            department=self.validator.sanitize_plain(department, 100),
            year=self._year(year),
            section=self.validator.sanitize_plain(str(section), 20),
            class_teacher_id=self._class_teacher_id(class_teacher_id),
        )
        db.session.add(school_class)
        self._commit()
        audit_logger.create_log(LogAction.ADMIN_ACTION, actor.user_id,
                                {'action_type': 'class_create', 'class_id': school_class.id,
                                 'class_name': school_class.name},
                                status=LogStatus.SUCCESS)
        return school_class

    def update_class(self, actor, class_id, name=None, department=None, year=None, section=None,
                     class_teacher_id=None, active=None, clear_class_teacher=False):
        school_class = self.get_class(class_id)
        if name is not None:
            name = self.validator.sanitize_plain(name, 100)
            if not name:
                raise ValidationError("Class name is required")
            if name != school_class.name and self._name_taken(name, exclude_id=school_class.id):
                raise DuplicateClassName()
            school_class.name = name
        if department is not None:
            school_class.department = self.validator.sanitize_plain(department, 100)
        if year is not None:
            school_class.year = self._year(year)
        if section is not None:
            school_class.section = self.validator.sanitize_plain(str(section), 20)
        if clear_class_teacher:
            school_class.class_teacher_id = None
        elif class_teacher_id is not None:
            school_class.class_teacher_id = self._class_teacher_id(class_teacher_id)
        if active is not None:
            school_class.active = self.validator.parse_bool(active)

        self._commit()
        audit_logger.create_log(LogAction.ADMIN_ACTION, actor.user_id,
                                {'action_type': 'class_update', 'class_id': school_class.id,
                                 'class_name': school_class.name},
                                status=LogStatus.SUCCESS)
        return school_class

    def delete_class(self, actor, class_id):
        school_class = self.get_class(class_id)

        students = db.session.query(User).filter(User.class_id == school_class.id,
                                                 User.role == Role.STUDENT).count()
        if students > 0:
            raise ClassHasStudents()
        elections = db.session.query(Election).filter(Election.class_id == school_class.id).count()
        if elections > 0:
            raise ClassHasElections()

        details = {'action_type': 'class_delete', 'class_id': school_class.id, 'class_name': school_class.name}
        db.session.delete(school_class)
        db.session.commit()
        audit_logger.create_log(LogAction.ADMIN_ACTION, actor.user_id, details, status=LogStatus.SUCCESS)

    def list_classes(self, search=None, active=None, page=1, per_page=20):
        query = db.session.query(SchoolClass)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(SchoolClass.name.ilike(pattern), SchoolClass.department.ilike(pattern)))
        if active is not None:
            query = query.filter(SchoolClass.active.is_(bool(active)))
        return paginate(query.order_by(SchoolClass.name), page, per_page)

    def classes_for_teacher(self, teacher_id):
        return (db.session.query(SchoolClass)
                .filter(SchoolClass.class_teacher_id == teacher_id)
                .order_by(SchoolClass.name).all())


class_registry = ClassRegistry()
