import os
import sys

# Serverless entrypoint: the repository root holds the quizlead_crm package
root_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if root_dir not in sys.path:
    sys.path.append(root_dir)

try:
    from quizlead_crm.app import create_app
    app = create_app()

except Exception as e:
    # Diagnostic fail-safe: answer every route with the boot error instead of a blank 500
    from flask import Flask, jsonify
    import traceback
    boot_error = str(e)
    boot_traceback = traceback.format_exc()
    app = Flask(__name__)

    @app.route('/', defaults={'path': ''})
    @app.route('/<path:path>')
    def catch_all(path):
        return jsonify({
            'success': False,
            'data': None,
            'error': {
                'code': 'boot_error',
                'message': boot_error,
                'traceback': boot_traceback,
            }
        }), 500
