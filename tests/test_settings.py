from conftest import events_named


def test_public_settings_defaults(app):
    resp = app.test_client().get('/api/settings/public')
    assert resp.status_code == 200
    assert resp.get_json() == {
        'clinic_name': '',
        'clinic_logo': '',
        'alert_sound_url': '',
        'notification_sound_url': '',
        'show_clinic_logo': True,
        'show_walkflow_logo': True,
    }


def test_update_settings_invalidates_cache(app, login_as, socket_for):
    client = app.test_client()
    client.get('/api/settings/public')

    admin = login_as('admin')
    screen = socket_for(login_as('wait_times'))
    resp = admin.patch('/api/settings', json={
        'clinic_name': 'Hospital Central',
        'show_clinic_logo': False,
        'show_walkflow_logo': 'no',
        'unknown_key': 'ignored',
    })
    assert resp.status_code == 200

    settings = client.get('/api/settings/public').get_json()
    assert settings['clinic_name'] == 'Hospital Central'
    assert settings['show_clinic_logo'] is False
    assert settings['show_walkflow_logo'] is True
    assert 'unknown_key' not in settings
    assert events_named(screen.get_received(), 'settings_updated') == [{'refresh': True}]


def test_update_clinic_name(app, login_as):
    admin = login_as('admin')
    assert admin.patch('/api/settings/clinic-name', json={'clinic_name': ''}).status_code == 400
    assert admin.patch('/api/settings/clinic-name', json={'clinic_name': '   '}).status_code == 400
    assert admin.patch('/api/settings/clinic-name', json={'clinic_name': 42}).status_code == 400
    assert admin.patch('/api/settings/clinic-name', json={'clinic_name': 'ED Norte'}).status_code == 200
    assert admin.patch('/api/settings/clinic-name', json={'clinic_name': '  ED Sul '}).status_code == 200

    assert app.test_client().get('/api/settings/public').get_json()['clinic_name'] == 'ED Sul'


def test_settings_require_admin(login_as):
    nurse = login_as('nurse')
    assert nurse.patch('/api/settings', json={'clinic_name': 'x'}).status_code == 403
    assert nurse.patch('/api/settings/clinic-name', json={'clinic_name': 'x'}).status_code == 403
