# auth_utils.py
import jwt
from flask import request, jsonify, current_app, g
from functools import wraps


def jwt_required(f):
    """管理接口鉴权：Authorization: Bearer <token>，HS256 + JWT_SECRET，且 role=admin"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get('Authorization', None)
        if not auth_header or not auth_header.startswith('Bearer '):
            return jsonify({'success': False, 'message': 'Missing authorization token'}), 401
        token = auth_header.split(' ', 1)[1]

        secret = current_app.config.get('JWT_SECRET')
        if not secret:
            return jsonify({'success': False, 'message': 'Authorization is not configured'}), 503

        try:
            payload = jwt.decode(token, secret, algorithms=['HS256'])
        except jwt.ExpiredSignatureError:
            return jsonify({'success': False, 'message': 'Authorization token expired'}), 401
        except jwt.InvalidTokenError:
            return jsonify({'success': False, 'message': 'Invalid authorization token'}), 401

        if payload.get('role') != 'admin':
            return jsonify({'success': False, 'message': 'Admin privileges required'}), 403

        g.current_admin = payload.get('sub') or payload.get('user_id') or 'admin'
        return f(*args, **kwargs)
    return decorated_function
