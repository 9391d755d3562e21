import os

from flask import Flask, jsonify, request, redirect
from flask_sqlalchemy import SQLAlchemy

from flask_passkey_ceremony import PasskeyCeremony, SQLAlchemyStorageAdapter

app = Flask(__name__)
app.config["SECRET_KEY"] = "dev-secret-change-in-production"
app.config["SQLALCHEMY_DATABASE_URI"] = "sqlite:///passkeys.db"
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

app.config["PASSKEY_RP_ID"] = "localhost"
app.config["PASSKEY_RP_NAME"] = "Passkey Demo"
app.config["PASSKEY_ORIGIN"] = "http://localhost:5000"
app.config["PASSKEY_REDIS_URL"] = os.environ.get("REDIS_URL")

db = SQLAlchemy(app)

with app.app_context():
    storage = SQLAlchemyStorageAdapter(db.session)
    passkey = PasskeyCeremony(app, storage_adapter=storage)


# Routes

@app.route("/")
def index():
    if passkey.is_authenticated():
        return jsonify({"user": passkey.get_current_user()})
    return redirect("/login")


@app.route("/login")
def login():
    return jsonify({
        "register": ["/signup", "/webauthn/register/options", "/webauthn/register/verification"],
        "login": ["/webauthn/authenticate/options", "/webauthn/authenticate/verification"],
    })


@app.route("/signup", methods=["POST"])
def signup():
    # Identities are owned by the host app; the ceremonies only enroll credentials
    username = (request.get_json(silent=True) or {}).get("username")
    if not isinstance(username, str) or not username:
        return jsonify({"error": "Invalid username type"}), 400
    return jsonify(storage.create_identity(username)), 201


@app.route("/account")
@passkey.login_required
def account():
    return jsonify(passkey.get_current_user())


if __name__ == "__main__":
    app.run(debug=True)
