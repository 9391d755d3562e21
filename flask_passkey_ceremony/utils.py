import base64
import binascii
from functools import wraps

from flask import current_app, redirect, request, session, url_for


def b64url_encode(raw):
    """Encode bytes with the URL-safe alphabet and no padding (RFC 4648 section 5).

    Stored credential ids and public keys use exactly this encoding; changing it
    makes existing rows unreadable.
    """
    return base64.urlsafe_b64encode(bytes(raw)).rstrip(b"=").decode("ascii")


def b64url_decode(value):
    """Decode an unpadded URL-safe base64 string.

    Raises:
        ValueError: if ``value`` is not valid unpadded base64url.
    """
    if not isinstance(value, str):
        raise ValueError("base64url value must be a string")
    if "=" in value or len(value) % 4 == 1:
        raise ValueError("invalid base64url length or padding")
    if "+" in value or "/" in value:
        raise ValueError("standard base64 alphabet is not accepted")
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except binascii.Error as e:
        raise ValueError(str(e)) from e


def login_required(f):
    """Decorator to require a passkey login for a view.

    Example:
        @app.route('/profile')
        @login_required
        def profile():
            return 'Protected page'
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        ext = current_app.extensions.get('passkey_ceremony')

        if not ext or not ext.is_authenticated():
            session['next'] = request.full_path
            return redirect(url_for('passkey.login'))

        return f(*args, **kwargs)
    return decorated_function


def get_current_user():
    """Get the identity row of the logged-in user.

    Returns:
        dict or None: The current user if authenticated, None otherwise
    """
    ext = current_app.extensions.get('passkey_ceremony')

    if not ext or not ext.is_authenticated():
        return None

    return ext.get_current_user()


def is_authenticated():
    ext = current_app.extensions.get('passkey_ceremony')

    if not ext:
        return False

    return ext.is_authenticated()


def logout():
    """Log the current user out.

    Returns:
        Response: Redirect to the blueprint logout route
    """
    ext = current_app.extensions.get('passkey_ceremony')

    if not ext:
        return redirect('/')

    return redirect(url_for('passkey.logout'))
