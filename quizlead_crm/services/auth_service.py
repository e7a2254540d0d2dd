from flask import current_app
from datetime import datetime, timedelta
from werkzeug.security import generate_password_hash, check_password_hash
from quizlead_crm.models import db, User, OtpCode, get_now_br, ROLE_ADMIN, ROLE_USER
from quizlead_crm.errors import AuthenticationError, ValidationError
from quizlead_crm.services.whatsapp_service import WhatsAppService
import jwt
import secrets
import string


class AuthService:
    @staticmethod
    def login_admin(email, password):
        email = (email or '').strip().lower()
        if not email or not password:
            raise ValidationError('Informe email e senha.', field='email' if not email else 'password')

        user = User.query.filter_by(email=email, role=ROLE_ADMIN).first()
        if not user or not user.password_hash or not check_password_hash(user.password_hash, password):
            current_app.logger.warning(f"Failed admin login for {email}")
            raise AuthenticationError('Email ou senha incorretos.')

        user.last_login = get_now_br()
        db.session.commit()
        return user

    @staticmethod
    def _generate_code():
        length = current_app.config.get('OTP_LENGTH', 6)
        return ''.join(secrets.choice(string.digits) for _ in range(length))

    @staticmethod
    def request_otp(phone):
        """Issues a one-time code for a salesperson. Unknown phones get no code and no error."""
        normalized = WhatsAppService.normalize_phone(phone)
        if not normalized:
            raise ValidationError('Telefone inválido.', field='phone')

        user = User.query.filter_by(phone=normalized, role=ROLE_USER).first()
        if not user:
            current_app.logger.info(f"OTP requested for unknown phone {normalized}")
            return False

        now = get_now_br()
        # Only the latest code is valid
        OtpCode.query.filter_by(user_id=user.id, used_at=None).update({'used_at': now}, synchronize_session=False)

        code = AuthService._generate_code()
        ttl = current_app.config.get('OTP_TTL_MINUTES', 5)
        db.session.add(OtpCode(
            user_id=user.id,
            phone=normalized,
            code_hash=generate_password_hash(code),
            expires_at=now + timedelta(minutes=ttl)
        ))
        db.session.commit()
        current_app.logger.info(f"OTP issued for user {user.id} (expires in {ttl} min)")

        WhatsAppService.send_system_message(
            normalized,
            f"Seu código de acesso QuizLead é {code}. Ele expira em {ttl} minutos."
        )
        return True

    @staticmethod
    def verify_otp(phone, code):
        normalized = WhatsAppService.normalize_phone(phone)
        code = str(code or '').strip()
        if not normalized or not code:
            raise AuthenticationError('Código inválido ou expirado.')

        otp = OtpCode.query.filter_by(phone=normalized, used_at=None)\
            .order_by(OtpCode.created_at.desc(), OtpCode.id.desc()).first()
        now = get_now_br()
        if not otp or otp.expires_at < now:
            current_app.logger.warning(f"Failed OTP verification for {normalized}")
            raise AuthenticationError('Código inválido ou expirado.')

        if not check_password_hash(otp.code_hash, code):
            otp.attempts = (otp.attempts or 0) + 1
            if otp.attempts >= current_app.config.get('OTP_MAX_ATTEMPTS', 5):
                otp.used_at = now
                current_app.logger.warning(f"OTP {otp.id} burned after {otp.attempts} wrong attempts")
            db.session.commit()
            current_app.logger.warning(f"Failed OTP verification for {normalized}")
            raise AuthenticationError('Código inválido ou expirado.')

        otp.used_at = now
        user = otp.user
        user.last_login = now
        db.session.commit()
        return user

    @staticmethod
    def issue_token(user):
        payload = {
            'user_id': user.id,
            'role': user.role,
            'exp': datetime.utcnow() + timedelta(days=current_app.config.get('JWT_EXPIRATION_DAYS', 7))
        }
        return jwt.encode(payload, current_app.config['SECRET_KEY'], algorithm='HS256')

    @staticmethod
    def user_from_token(token):
        try:
            data = jwt.decode(token, current_app.config['SECRET_KEY'], algorithms=['HS256'])
        except jwt.PyJWTError:
            return None
        return db.session.get(User, data.get('user_id'))
