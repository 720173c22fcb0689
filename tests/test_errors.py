from crowdfund.errors import STATUS_MAP, AppError, ErrorCode


def test_every_code_has_a_status():
    for code in ErrorCode:
        assert code in STATUS_MAP


def test_status_mapping():
    assert AppError(ErrorCode.VALIDATION, 'x').status == 400
    assert AppError(ErrorCode.WEAK_PASSWORD, 'x').status == 400
    assert AppError(ErrorCode.PROJECT_ENDED, 'x').status == 400
    assert AppError(ErrorCode.INVALID_CREDENTIALS, 'x').status == 401
    assert AppError(ErrorCode.FORBIDDEN, 'x').status == 403
    assert AppError(ErrorCode.PROJECT_NOT_FOUND, 'x').status == 404
    assert AppError(ErrorCode.USER_EXISTS, 'x').status == 409
    assert AppError(ErrorCode.CONFLICT, 'x').status == 409
    assert AppError(ErrorCode.TIMEOUT, 'x').status == 504
    assert AppError(ErrorCode.DATABASE, 'x').status == 500


def test_app_error_envelope_includes_cause_in_testing(app, client):

    @app.route('/boom/app-error')
    def app_error():
        raise AppError(
            ErrorCode.DATABASE, 'create order failed', ValueError('disk'))

    resp = client.get('/boom/app-error')
    assert resp.status_code == 500
    body = resp.get_json()
    assert body['code'] == 1001
    assert body['message'] == 'create order failed'
    assert body['error'] == 'disk'


def test_unexpected_exception_is_recovered(app, client):

    @app.route('/boom/panic')
    def panic():
        raise RuntimeError('kaboom')

    resp = client.get('/boom/panic')
    assert resp.status_code == 500
    body = resp.get_json()
    assert body['code'] == ErrorCode.INTERNAL
    assert body['message'] == 'internal server error'

    # The app keeps serving afterwards.
    assert client.get('/api/projects').status_code == 200


def test_unknown_route_uses_envelope(client):
    resp = client.get('/api/projects/999999')
    assert resp.status_code == 404
    assert resp.get_json()['code'] == ErrorCode.PROJECT_NOT_FOUND

    resp = client.get('/nope')
    assert resp.status_code == 404
    assert resp.get_json()['code'] == ErrorCode.NOT_FOUND


def test_non_object_body_is_bad_request(client, make_user):
    _, headers = make_user('alice')
    resp = client.post('/api/addresses', json=[1, 2], headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()['code'] == ErrorCode.BAD_REQUEST


def test_error_monitor_counts_errors(app, client):
    client.get('/api/profile')
    client.get('/api/profile')
    snapshot = app.extensions['error_monitor'].snapshot()
    assert snapshot['total_errors'] >= 2
    assert snapshot['errors_by_path']['/api/profile'] == 2
    assert snapshot['errors_by_code'][str(int(ErrorCode.UNAUTHORIZED))] == 2


def test_error_monitor_groups_unmatched_paths(app, client):
    for n in range(20):
        assert client.get(f'/scan/{n}/wp-login.php').status_code == 404
    client.get('/api/projects/999999')
    snapshot = app.extensions['error_monitor'].snapshot()
    by_path = snapshot['errors_by_path']
    assert by_path['<unmatched>'] == 20
    assert by_path['/api/projects/<int:project_id>'] == 1
    assert not any(path.startswith('/scan/') for path in by_path)
