import json
import pathlib
import sys
import uuid
from dataclasses import dataclass, field

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from splint_factory.app_logging import init_logging
from splint_factory.config import reset_settings_cache
from splint_factory.geometry import processor_health
from splint_factory.models import (
    ApiKey,
    Base,
    GeometryProcessingQueue,
    NamedGeometry,
    Organization,
    PrintQueue,
    User,
    UserRole,
)
from splint_factory.models.session import create_schema, get_engine
from splint_factory.printing.events import reset_broadcaster
from splint_factory.security import create_access_token, hash_password, reset_jwt_settings_cache
from splint_factory.security.api_keys import serialize_permissions
from splint_factory.security.auth import reset_session_factory
from splint_factory.security.tokens import hash_token
from splint_factory.storage.blob import reset_blob_storage

WRIST_SCHEMA = json.dumps(
    [
        {
            "InputName": "wrist_width",
            "InputDescription": "Wrist width (mm)",
            "InputType": "Float",
            "NumberMin": 30,
            "NumberMax": 120,
        },
        {
            "InputName": "finger_count",
            "InputDescription": "Number of finger loops",
            "InputType": "Integer",
            "NumberMin": 0,
            "NumberMax": 5,
        },
        {
            "InputName": "label",
            "InputDescription": "Engraved label",
            "InputType": "Text",
            "TextMinLen": 0,
            "TextMaxLen": 12,
        },
    ]
)
WRIST_VALUES = json.dumps({"wrist_width": 62.5, "finger_count": 2, "label": "L-01"})

ROLE_USERS = {
    "system_admin": UserRole.SYSTEM_ADMIN.value,
    "org_admin": UserRole.ORG_ADMIN.value,
    "member": UserRole.MEMBER.value,
}


@dataclass
class FactoryContext:
    engine: object
    session_factory: sessionmaker[Session]
    organization_id: uuid.UUID
    other_organization_id: uuid.UUID
    users: dict[str, uuid.UUID]
    tokens: dict[str, str]
    password: str = "Secret123!"
    api_keys: dict[str, str] = field(default_factory=dict)

    def header(self, role: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens[role]}"}

    def api_key_header(self, raw_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {raw_key}"}

    def create_api_key(
        self,
        permissions: list[str],
        *,
        name: str = "processor",
        organization_id: uuid.UUID | None = None,
    ) -> str:
        raw_key = uuid.uuid4().hex + uuid.uuid4().hex
        with self.session_factory.begin() as session:
            session.add(
                ApiKey(
                    name=name,
                    key_hash=hash_token(raw_key),
                    permissions=serialize_permissions(permissions),
                    organization_id=organization_id,
                    created_by=self.users["system_admin"],
                )
            )
        self.api_keys[name] = raw_key
        return raw_key

    def create_geometry(
        self,
        name: str = "Wrist Splint",
        *,
        schema: str = WRIST_SCHEMA,
        algorithm: str = "wrist_splint_v2",
    ) -> uuid.UUID:
        with self.session_factory.begin() as session:
            geometry = NamedGeometry(
                geometry_name=name,
                algorithm_name=algorithm,
                parameter_schema=schema,
                creator_id=self.users["system_admin"],
            )
            session.add(geometry)
            session.flush()
            return geometry.id

    def create_job(
        self,
        geometry_id: uuid.UUID,
        *,
        organization_id: uuid.UUID | None = None,
        object_id: str | None = None,
        **fields: object,
    ) -> uuid.UUID:
        with self.session_factory.begin() as session:
            job = GeometryProcessingQueue(
                geometry_id=geometry_id,
                creator_id=self.users["member"],
                organization_id=organization_id or self.organization_id,
                parameter_data=WRIST_VALUES,
                object_id=object_id,
                **fields,
            )
            session.add(job)
            session.flush()
            return job.id

    def create_print_entry(self, job_id: uuid.UUID, **fields: object) -> uuid.UUID:
        with self.session_factory.begin() as session:
            entry = PrintQueue(geometry_job_id=job_id, **fields)
            session.add(entry)
            session.flush()
            return entry.id


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app


@pytest.fixture
def token_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SESSION_TOKEN_SECRET", "super-secret-key")
    monkeypatch.setenv("SESSION_TOKEN_AUDIENCE", "splint-factory")
    monkeypatch.setenv("SESSION_TOKEN_ISSUER", "auth.splint-factory")
    monkeypatch.setenv("SESSION_TOKEN_ALGORITHM", "HS256")
    reset_jwt_settings_cache()
    yield
    reset_jwt_settings_cache()


@pytest.fixture
def factory_auth(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path_factory: pytest.TempPathFactory,
    token_env: None,
) -> FactoryContext:
    workdir = tmp_path_factory.mktemp("factory")
    db_url = f"sqlite+pysqlite:///{workdir / 'factory.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("LOG_DIR", str(workdir / "logs"))
    monkeypatch.setenv("BLOB_STORAGE_DIR", str(workdir / "blobs"))
    monkeypatch.setenv("HOSTED_FILES_DIR", str(workdir / "hosted"))
    monkeypatch.setenv("SSE_HEARTBEAT_SECONDS", "0.05")
    reset_settings_cache()
    reset_session_factory()
    reset_blob_storage()
    reset_broadcaster()
    processor_health.reset()

    engine = get_engine(db_url)
    create_schema(engine)
    session_factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    users: dict[str, uuid.UUID] = {}
    user_objs: dict[str, User] = {}
    with session_factory.begin() as session:
        organization = Organization(name="Northside Clinic")
        other = Organization(name="Harbor Orthotics")
        session.add_all([organization, other])
        session.flush()
        for key, role in ROLE_USERS.items():
            user = User(
                organization_id=organization.id,
                email=f"{key}@northside.example",
                name=key.replace("_", " ").title(),
                password_hash=hash_password("Secret123!"),
                role=role,
            )
            session.add(user)
            user_objs[key] = user
        outsider = User(
            organization_id=other.id,
            email="member@harbor.example",
            name="Harbor Member",
            password_hash=hash_password("Secret123!"),
            role=UserRole.MEMBER.value,
        )
        session.add(outsider)
        user_objs["outsider"] = outsider
        session.flush()
        users = {key: user.id for key, user in user_objs.items()}
        organization_id = organization.id
        other_organization_id = other.id

    tokens = {key: create_access_token(user)[0] for key, user in user_objs.items()}

    context = FactoryContext(
        engine=engine,
        session_factory=session_factory,
        organization_id=organization_id,
        other_organization_id=other_organization_id,
        users=users,
        tokens=tokens,
    )

    yield context

    reset_session_factory()
    Base.metadata.drop_all(engine)
    engine.dispose()
    reset_settings_cache()
    reset_blob_storage()
    reset_broadcaster()


@pytest.fixture
def client(factory_auth: FactoryContext) -> TestClient:
    from splint_factory import main
    from splint_factory.rate_limit import limiter

    limiter.reset()
    return TestClient(main.app)
