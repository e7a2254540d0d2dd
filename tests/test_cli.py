from quizlead_crm.models import db, User


def test_reset_daily_counters_command(app, factory):
    with app.app_context():
        user_id = factory.user(received=3).id
        factory.user()

    result = app.test_cli_runner().invoke(args=['reset-daily-counters'])

    assert result.exit_code == 0
    assert 'Reset 1 counters.' in result.output
    with app.app_context():
        assert db.session.get(User, user_id).leads_received_today == 0
