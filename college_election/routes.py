# college_election/routes.py

# JSON API for the three roles plus the public QR voting link.
# Routes only parse input and shape output; the services enforce the rules and
# raise errors that error_handlers.py turns into responses.

from flask import request, jsonify, make_response
from flask_jwt_extended import jwt_required, get_jwt_identity

from college_election import app, limiter, db, client_info
from college_election.audit.audit_logger import audit_logger
from college_election.authentication.identity import identity_service
from college_election.authentication.rbac import (
    Permission, current_auth_context, require_auth, require_permission, require_role,
)
from college_election.database.models import Election, ElectionStatus, Role, SchoolClass, User
from college_election.errors import AccountDeactivated, AuthenticationError, AuthorizationError
from college_election.operations.backup_manager import perform_backup
from college_election.operations.health_monitor import check_health, check_ready
from college_election.security.input_validator import InputValidator
from college_election.security.token_manager import token_manager
from college_election.services.candidates import candidate_registry
from college_election.services.classes import class_registry
from college_election.services.elections import can_manage, election_engine, ensure_can_manage
from college_election.services.qr_access import qr_access_service

validator = InputValidator()


def vote_rate_limit():
    return app.config['VOTE_RATE_LIMIT']


def login_rate_limit():
    return app.config['LOGIN_RATE_LIMIT']


def _payload():
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _page_args():
    return request.args.get('page', 1), request.args.get('per_page', 20)


def _page_json(page):
    return {
        'items': [item.to_dict() for item in page['items']],
        'total': page['total'],
        'page': page['page'],
        'per_page': page['per_page'],
        'pages': page['pages'],
    }


def _student_can_view(context, election):
    student = db.session.get(User, context.user_id)
    return student is not None and student.class_id == election.class_id


# ---------------------------------------------------------------- auth

@app.route('/auth/register', methods=['POST'])
@limiter.limit(login_rate_limit)
def register():
    data = _payload()
    user = identity_service.register(
        name=data.get('name'),
        email=data.get('email'),
        password=data.get('password'),
        confirm_password=data.get('confirm_password'),
        role=data.get('role') or Role.STUDENT.value,
        roll_number=data.get('roll_number'),
        class_id=data.get('class_id'),
    )
    return jsonify({'message': 'Registration successful! Please check your email to verify your account.',
                    'user': user.to_dict()}), 201


@app.route('/auth/login', methods=['POST'])
@limiter.limit(login_rate_limit)
def login():
    data = _payload()
    user = identity_service.authenticate(data.get('email'), data.get('password'))
    tokens = token_manager.issue_tokens(user)
    resp = make_response(jsonify({'message': f'Welcome back, {user.name}!', 'user': user.to_dict(), **tokens}))
    return token_manager.attach_cookies(resp, tokens)


@app.route('/auth/refresh', methods=['POST'])
@jwt_required(refresh=True)
def refresh():
    # Role and verification are re-read so demotions take effect on refresh
    user = db.session.get(User, int(get_jwt_identity()))
    if user is None:
        raise AuthenticationError("Account no longer exists")
    if not user.active:
        raise AccountDeactivated()
    tokens = token_manager.issue_tokens(user)
    return token_manager.attach_cookies(make_response(jsonify({'refresh': True, **tokens})), tokens)


@app.route('/auth/logout', methods=['POST'])
def logout():
    context = current_auth_context(optional=True)
    if context is not None:
        identity_service.logout(context.user_id)
    return token_manager.clear_cookies(make_response(jsonify({'message': 'You have been logged out'})))


@app.route('/auth/me')
@require_auth(verified=False)
def me():
    context = current_auth_context()
    return jsonify({'user': identity_service.get_user(context.user_id).to_dict()})


@app.route('/auth/verify/<token>')
def verify_email(token):
    identity_service.verify_email(token)
    return jsonify({'message': 'Email verification successful! You can now log in.'})


@app.route('/auth/resend-verification', methods=['POST'])
@limiter.limit(login_rate_limit)
def resend_verification():
    identity_service.resend_verification(_payload().get('email'))
    return jsonify({'message': 'Verification email sent. Please check your inbox.'})


@app.route('/auth/forgot-password', methods=['POST'])
@limiter.limit(login_rate_limit)
def forgot_password():
    identity_service.request_password_reset(_payload().get('email'))
    return jsonify({'message': 'If your email is registered, you will receive password reset instructions.'})


@app.route('/auth/reset-password/<token>', methods=['GET', 'POST'])
def reset_password(token):
    if request.method == 'GET':
        identity_service.check_reset_token(token)
        return jsonify({'valid': True})
    data = _payload()
    identity_service.complete_password_reset(token, data.get('password'), data.get('confirm_password'))
    return jsonify({'message': 'Your password has been reset. You can now log in.'})


# ---------------------------------------------------------------- admin

@app.route('/admin/dashboard')
@require_role(Role.ADMIN)
def admin_dashboard():
    def count_users(role):
        return db.session.query(User).filter(User.role == role).count()

    elections_by_status = {
        status.value: db.session.query(Election).filter(Election.status == status).count()
        for status in ElectionStatus
    }
    return jsonify({
        'stats': {
            'total_users': db.session.query(User).count(),
            'total_students': count_users(Role.STUDENT),
            'total_teachers': count_users(Role.TEACHER),
            'total_classes': db.session.query(SchoolClass).count(),
            'total_elections': sum(elections_by_status.values()),
            'elections_by_status': elections_by_status,
        },
        'recent_logs': [log.to_dict() for log in audit_logger.recent_logs(10)],
    })


@app.route('/admin/users', methods=['GET', 'POST'])
@require_permission(Permission.MANAGE_USERS)
def admin_users():
    context = current_auth_context()
    if request.method == 'POST':
        data = _payload()
        user = identity_service.create_user(
            context,
            name=data.get('name'),
            email=data.get('email'),
            password=data.get('password'),
            role=data.get('role') or Role.STUDENT.value,
            roll_number=data.get('roll_number'),
            class_id=data.get('class_id'),
            verified=validator.parse_bool(data.get('verified', True)),
        )
        return jsonify({'user': user.to_dict()}), 201

    page, per_page = _page_args()
    result = identity_service.list_users(role=request.args.get('role'), search=request.args.get('search'),
                                         page=page, per_page=per_page)
    return jsonify(_page_json(result))


@app.route('/admin/users/<int:user_id>')
@require_permission(Permission.MANAGE_USERS)
def admin_user_detail(user_id):
    return jsonify({'user': identity_service.get_user(user_id).to_dict()})


@app.route('/admin/users/<int:user_id>/update', methods=['POST'])
@require_permission(Permission.MANAGE_USERS)
def admin_update_user(user_id):
    data = _payload()
    user = identity_service.update_user(
        current_auth_context(), user_id,
        name=data.get('name'),
        email=data.get('email'),
        role=data.get('role'),
        active=data.get('active'),
        roll_number=data.get('roll_number'),
        class_id=data.get('class_id'),
        password=data.get('password'),
    )
    return jsonify({'message': 'User updated successfully', 'user': user.to_dict()})


@app.route('/admin/users/<int:user_id>/delete', methods=['POST'])
@require_permission(Permission.MANAGE_USERS)
def admin_delete_user(user_id):
    identity_service.delete_user(current_auth_context(), user_id)
    return jsonify({'message': 'User deleted successfully'})


@app.route('/admin/classes', methods=['GET', 'POST'])
@require_permission(Permission.MANAGE_CLASSES)
def admin_classes():
    if request.method == 'POST':
        data = _payload()
        school_class = class_registry.create_class(
            current_auth_context(),
            name=data.get('name'),
            department=data.get('department'),
            year=data.get('year'),
            section=data.get('section'),
            class_teacher_id=data.get('class_teacher_id'),
        )
        return jsonify({'class': school_class.to_dict()}), 201

    page, per_page = _page_args()
    result = class_registry.list_classes(search=request.args.get('search'), page=page, per_page=per_page)
    return jsonify(_page_json(result))


@app.route('/admin/classes/<int:class_id>')
@require_permission(Permission.MANAGE_CLASSES)
def admin_class_detail(class_id):
    school_class = class_registry.get_class(class_id)
    return jsonify({
        'class': school_class.to_dict(),
        'students': [s.to_dict() for s in school_class.students if s.is_student()],
        'elections': [e.to_dict() for e in school_class.elections],
    })


@app.route('/admin/classes/<int:class_id>/update', methods=['POST'])
@require_permission(Permission.MANAGE_CLASSES)
def admin_update_class(class_id):
    data = _payload()
    school_class = class_registry.update_class(
        current_auth_context(), class_id,
        name=data.get('name'),
        department=data.get('department'),
        year=data.get('year'),
        section=data.get('section'),
        class_teacher_id=data.get('class_teacher_id') or None,
        active=data.get('active'),
        clear_class_teacher=data.get('class_teacher_id', None) == '',
    )
    return jsonify({'message': 'Class updated successfully', 'class': school_class.to_dict()})


@app.route('/admin/classes/<int:class_id>/delete', methods=['POST'])
@require_permission(Permission.MANAGE_CLASSES)
def admin_delete_class(class_id):
    class_registry.delete_class(current_auth_context(), class_id)
    return jsonify({'message': 'Class deleted successfully'})


@app.route('/admin/elections/<int:election_id>/status', methods=['POST'])
@require_role(Role.ADMIN)
def admin_election_status(election_id):
    election = election_engine.change_status(current_auth_context(), election_id, _payload().get('status'))
    return jsonify({'message': f'Election status changed to {election.status.value}',
                    'election': election.to_dict()})


@app.route('/admin/elections/<int:election_id>/delete', methods=['POST'])
@require_role(Role.ADMIN)
def admin_delete_election(election_id):
    election_engine.delete_election(current_auth_context(), election_id)
    return jsonify({'message': 'Election deleted successfully'})


@app.route('/admin/logs')
@require_permission(Permission.VIEW_AUDIT_LOGS)
def admin_logs():
    args = request.args
    start = validator.parse_datetime(args['start_date'], 'start date') if args.get('start_date') else None
    end = validator.parse_datetime(args['end_date'], 'end date') if args.get('end_date') else None
    user_id = validator.parse_int(args['user_id'], 'user') if args.get('user_id') else None
    try:
        result = audit_logger.query_logs(action=args.get('action'), status=args.get('status'), user_id=user_id,
                                         start=start, end=end, page=args.get('page', 1),
                                         per_page=args.get('per_page', 50))
    except ValueError:
        return jsonify({'error': 'Invalid action or status filter', 'code': 'ValidationError'}), 400
    body = _page_json(result)
    body['actions'] = audit_logger.distinct_actions()
    return jsonify(body)


@app.route('/admin/logs/verify')
@require_permission(Permission.VIEW_AUDIT_LOGS)
def admin_verify_logs():
    return jsonify({'intact': audit_logger.verify_log_integrity()})


@app.route('/admin/backup', methods=['POST'])
@require_permission(Permission.CREATE_BACKUP)
def admin_backup():
    result = perform_backup(current_auth_context())
    if not result['success']:
        return jsonify({'error': f"Backup failed: {result.get('error')}", 'code': 'BackupFailed'}), 500
    return jsonify({'message': 'Backup created successfully', **result})


# ---------------------------------------------------------------- teacher

@app.route('/teacher/dashboard')
@require_role(Role.TEACHER, Role.ADMIN)
def teacher_dashboard():
    context = current_auth_context()
    elections = election_engine.elections_for_teacher(context.user_id)
    return jsonify({
        'classes': [c.to_dict() for c in class_registry.classes_for_teacher(context.user_id)],
        'elections': [dict(e.to_dict(), statistics=election_engine.vote_statistics(e)) for e in elections],
    })


@app.route('/teacher/symbols')
@require_role(Role.TEACHER, Role.ADMIN)
def teacher_symbols():
    return jsonify({'symbols': candidate_registry.available_symbols()})


@app.route('/teacher/elections', methods=['POST'])
@require_permission(Permission.MANAGE_ELECTIONS)
def teacher_create_election():
    data = _payload()
    election = election_engine.create_election(
        current_auth_context(),
        title=data.get('title'),
        description=data.get('description'),
        election_type=data.get('election_type'),
        class_id=data.get('class_id'),
        start_date=data.get('start_date'),
        end_date=data.get('end_date'),
    )
    return jsonify({'message': 'Election created successfully', 'election': election.to_dict()}), 201


@app.route('/teacher/elections/<int:election_id>')
@require_permission(Permission.MANAGE_ELECTIONS)
def teacher_election_detail(election_id):
    election = election_engine.get_election(election_id)
    ensure_can_manage(current_auth_context(), election)
    return jsonify({
        'election': election.to_dict(),
        'statistics': election_engine.vote_statistics(election),
        'students_not_voted': [s.to_dict() for s in election_engine.students_not_voted(election)],
    })


@app.route('/teacher/elections/<int:election_id>/update', methods=['POST'])
@require_permission(Permission.MANAGE_ELECTIONS)
def teacher_update_election(election_id):
    data = _payload()
    election = election_engine.update_election(
        current_auth_context(), election_id,
        title=data.get('title'),
        description=data.get('description'),
        start_date=data.get('start_date'),
        end_date=data.get('end_date'),
    )
    return jsonify({'message': 'Election updated successfully', 'election': election.to_dict()})


@app.route('/teacher/elections/<int:election_id>/status', methods=['POST'])
@require_permission(Permission.MANAGE_ELECTIONS)
def teacher_election_status(election_id):
    election = election_engine.change_status(current_auth_context(), election_id, _payload().get('status'))
    return jsonify({'message': f'Election status changed to {election.status.value}',
                    'election': election.to_dict()})


@app.route('/teacher/elections/<int:election_id>/candidates', methods=['POST'])
@require_permission(Permission.MANAGE_CANDIDATES)
def teacher_add_candidate(election_id):
    data = _payload()
    candidate = candidate_registry.add_candidate(
        current_auth_context(), election_id,
        student_id=data.get('student_id'),
        symbol=data.get('symbol'),
        color=data.get('color'),
        manifesto=data.get('manifesto', ''),
    )
    return jsonify({'message': f'{candidate.student.name} has been added as a candidate',
                    'candidate': candidate.to_dict()}), 201


@app.route('/teacher/elections/<int:election_id>/candidates/<int:candidate_id>/remove', methods=['POST'])
@require_permission(Permission.MANAGE_CANDIDATES)
def teacher_remove_candidate(election_id, candidate_id):
    candidate_registry.remove_candidate(current_auth_context(), election_id, candidate_id)
    return jsonify({'message': 'Candidate has been removed'})


@app.route('/teacher/elections/<int:election_id>/candidates/<int:candidate_id>/approval', methods=['POST'])
@require_permission(Permission.MANAGE_CANDIDATES)
def teacher_candidate_approval(election_id, candidate_id):
    candidate = candidate_registry.set_approval(current_auth_context(), candidate_id,
                                                _payload().get('approved', True), election_id=election_id)
    return jsonify({'candidate': candidate.to_dict()})


@app.route('/teacher/elections/<int:election_id>/publish-results', methods=['POST'])
@require_permission(Permission.PUBLISH_RESULTS)
def teacher_publish_results(election_id):
    context = current_auth_context()
    election = election_engine.publish_results(context, election_id)
    return jsonify({'message': 'Election results published successfully',
                    'results': election_engine.results_for(context, election.id)})


@app.route('/teacher/elections/<int:election_id>/send-reminders', methods=['POST'])
@require_permission(Permission.SEND_REMINDERS)
def teacher_send_reminders(election_id):
    result = election_engine.send_voting_reminder(current_auth_context(), election_id)
    if result['recipients'] == 0:
        return jsonify({'message': 'All students have already voted in this election', **result})
    return jsonify({'message': f"Reminders sent to {result['sent']} students", **result})


# ---------------------------------------------------------------- student

@app.route('/student/dashboard')
@require_role(Role.STUDENT)
def student_dashboard():
    context = current_auth_context()
    student = identity_service.get_user(context.user_id)
    return jsonify({
        'student': student.to_dict(),
        'class': student.school_class.to_dict() if student.school_class else None,
        'elections': election_engine.elections_for_student(student.id),
    })


@app.route('/student/elections')
@require_role(Role.STUDENT)
def student_elections():
    return jsonify(election_engine.elections_for_student(current_auth_context().user_id))


@app.route('/student/elections/<int:election_id>/vote', methods=['POST'])
@limiter.limit(vote_rate_limit)
@require_permission(Permission.VOTE)
def student_vote(election_id):
    ip, user_agent = client_info()
    election_engine.cast_vote(current_auth_context().user_id, election_id, _payload().get('candidate_id'),
                              ip=ip, user_agent=user_agent)
    return jsonify({'message': 'Your vote has been successfully recorded'}), 201


@app.route('/student/profile', methods=['GET', 'POST'])
@require_permission(Permission.UPDATE_PROFILE)
def student_profile():
    context = current_auth_context()
    if request.method == 'POST':
        user = identity_service.update_profile(context.user_id, _payload().get('name'))
        return jsonify({'message': 'Profile updated successfully', 'user': user.to_dict()})
    user = identity_service.get_user(context.user_id)
    return jsonify({'user': user.to_dict(),
                    'class': user.school_class.to_dict() if user.school_class else None})


# ---------------------------------------------------------------- elections (any role)

@app.route('/elections')
@require_permission(Permission.VIEW_ELECTIONS)
def list_elections():
    context = current_auth_context()
    class_id = request.args.get('class_id')
    if context.is_student:
        class_id = identity_service.get_user(context.user_id).class_id
        if class_id is None:
            return jsonify({'items': [], 'total': 0, 'page': 1, 'per_page': 20, 'pages': 0})
    page, per_page = _page_args()
    result = election_engine.list_elections(status=request.args.get('status'),
                                            election_type=request.args.get('type'),
                                            class_id=class_id, search=request.args.get('search'),
                                            page=page, per_page=per_page)
    return jsonify(_page_json(result))


@app.route('/elections/<int:election_id>')
@require_permission(Permission.VIEW_ELECTIONS)
def election_detail(election_id):
    context = current_auth_context()
    election = election_engine.get_election(election_id)
    if context.is_student:
        if not _student_can_view(context, election):
            raise AuthorizationError("You do not have access to this election")
        return jsonify({'election': election.to_dict(),
                        'has_voted': election_engine.has_voted(election, student_id=context.user_id)})
    body = {'election': election.to_dict()}
    if can_manage(context, election):
        body['statistics'] = election_engine.vote_statistics(election)
    return jsonify(body)


@app.route('/elections/<int:election_id>/results')
@require_permission(Permission.VIEW_ELECTIONS)
def election_results(election_id):
    return jsonify(election_engine.results_for(current_auth_context(), election_id))


# ---------------------------------------------------------------- QR access

@app.route('/qr/<int:election_id>/generate', methods=['POST'])
@require_permission(Permission.MANAGE_QR_ACCESS)
def qr_generate(election_id):
    return jsonify({'success': True, **qr_access_service.generate_qr(current_auth_context(), election_id)})


@app.route('/qr/<int:election_id>/toggle', methods=['POST'])
@require_permission(Permission.MANAGE_QR_ACCESS)
def qr_toggle(election_id):
    enabled = qr_access_service.toggle_qr_access(current_auth_context(), election_id)
    return jsonify({'success': True, 'qr_enabled': enabled})


@app.route('/qr/<int:election_id>/timeslots', methods=['POST'])
@require_permission(Permission.MANAGE_QR_ACCESS)
def qr_add_time_slot(election_id):
    data = _payload()
    slot = qr_access_service.add_voting_time_slot(current_auth_context(), election_id,
                                                  data.get('start_time'), data.get('end_time'))
    return jsonify({'success': True, 'message': 'Voting time slot added successfully',
                    'slot': slot.to_dict()}), 201


@app.route('/qr/<int:election_id>/public-access', methods=['POST'])
@require_permission(Permission.MANAGE_QR_ACCESS)
def qr_public_access(election_id):
    data = _payload()
    election = qr_access_service.update_public_access(current_auth_context(), election_id,
                                                      allow_anonymous_voting=data.get('allow_anonymous_voting'),
                                                      require_roll_number=data.get('require_roll_number'))
    return jsonify({'success': True, 'public_access': election.to_dict()['public_access']})


# ---------------------------------------------------------------- public voting

@app.route('/vote/<token>', methods=['GET'])
def public_ballot(token):
    return jsonify(qr_access_service.public_ballot(token))


@app.route('/vote/<token>', methods=['POST'])
@limiter.limit(vote_rate_limit)
def public_vote(token):
    data = _payload()
    ip, user_agent = client_info()
    election_engine.cast_anonymous_vote(token, data.get('candidate_id'), roll_number=data.get('roll_number'),
                                        ip=ip, user_agent=user_agent)
    return jsonify({'message': 'Your vote has been recorded successfully!'}), 201


# ---------------------------------------------------------------- health

@app.route('/health')
def health():
    res = check_health()
    return jsonify(res), 200 if res["overall_ok"] else 503


@app.route('/ready')
def ready():
    res = check_ready()
    return jsonify(res), 200 if res["overall_ok"] else 503
