# schema.py — idempotent DDL for the quiz backend tables
from typing import List

TABLES: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS users (
      id          TEXT PRIMARY KEY,
      email       TEXT NOT NULL UNIQUE,       -- stored lower-case
      full_name   TEXT,
      role        TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
      created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS courses (
      id          TEXT PRIMARY KEY,
      title       TEXT NOT NULL,
      description TEXT,
      created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS questions (
      id          TEXT PRIMARY KEY,
      course_id   TEXT NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
      text        TEXT NOT NULL,
      explanation TEXT,
      image_urls  JSONB NOT NULL DEFAULT '[]'::jsonb,
      created_by  TEXT REFERENCES users(id) ON DELETE SET NULL,
      created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS answers (
      id          TEXT PRIMARY KEY,
      question_id TEXT NOT NULL REFERENCES questions(id) ON DELETE CASCADE,
      text        TEXT NOT NULL,
      is_correct  BOOLEAN NOT NULL DEFAULT FALSE,
      position    INTEGER NOT NULL DEFAULT 0
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS packages (
      id              TEXT PRIMARY KEY,
      title           TEXT NOT NULL,
      description     TEXT,
      price           NUMERIC(12, 2) NOT NULL DEFAULT 0,
      is_active       BOOLEAN NOT NULL DEFAULT TRUE,
      time_limit_min  INTEGER,
      available_from  TIMESTAMPTZ,
      available_until TIMESTAMPTZ,
      created_by      TEXT REFERENCES users(id) ON DELETE SET NULL,
      created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS package_questions (
      package_id  TEXT NOT NULL REFERENCES packages(id) ON DELETE CASCADE,
      question_id TEXT NOT NULL REFERENCES questions(id) ON DELETE CASCADE,
      position    INTEGER NOT NULL DEFAULT 0,
      PRIMARY KEY (package_id, question_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS bundles (
      id          TEXT PRIMARY KEY,
      title       TEXT NOT NULL,
      description TEXT,
      price       NUMERIC(12, 2) NOT NULL DEFAULT 0,
      is_active   BOOLEAN NOT NULL DEFAULT TRUE,
      created_by  TEXT REFERENCES users(id) ON DELETE SET NULL,
      created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS bundle_packages (
      bundle_id   TEXT NOT NULL REFERENCES bundles(id) ON DELETE CASCADE,
      package_id  TEXT NOT NULL REFERENCES packages(id) ON DELETE CASCADE,
      PRIMARY KEY (bundle_id, package_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS referral_codes (
      id             TEXT PRIMARY KEY,
      code           TEXT NOT NULL UNIQUE,     -- stored upper-case
      discount_type  TEXT NOT NULL CHECK (discount_type IN ('PERCENTAGE', 'FIXED')),
      discount_value NUMERIC(12, 2) NOT NULL,
      quota          INTEGER NOT NULL DEFAULT 1,
      used_count     INTEGER NOT NULL DEFAULT 0,
      is_active      BOOLEAN NOT NULL DEFAULT TRUE,
      expires_at     TIMESTAMPTZ,
      created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS package_purchases (
      id               TEXT PRIMARY KEY,
      user_id          TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
      package_id       TEXT NOT NULL REFERENCES packages(id) ON DELETE CASCADE,
      original_price   NUMERIC(12, 2) NOT NULL,
      price_paid       NUMERIC(12, 2) NOT NULL,
      discount_applied NUMERIC(12, 2) NOT NULL DEFAULT 0,
      referral_code_id TEXT REFERENCES referral_codes(id) ON DELETE SET NULL,
      approved         BOOLEAN NOT NULL DEFAULT FALSE,
      expires_at       TIMESTAMPTZ,
      proof_image_url  TEXT,
      purchased_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
      UNIQUE (user_id, package_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS bundle_purchases (
      id               TEXT PRIMARY KEY,
      user_id          TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
      bundle_id        TEXT NOT NULL REFERENCES bundles(id) ON DELETE CASCADE,
      original_price   NUMERIC(12, 2) NOT NULL,
      price_paid       NUMERIC(12, 2) NOT NULL,
      discount_applied NUMERIC(12, 2) NOT NULL DEFAULT 0,
      referral_code_id TEXT REFERENCES referral_codes(id) ON DELETE SET NULL,
      approved         BOOLEAN NOT NULL DEFAULT FALSE,
      expires_at       TIMESTAMPTZ,
      proof_image_url  TEXT,
      purchased_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
      UNIQUE (user_id, bundle_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS quiz_attempts (
      id              TEXT PRIMARY KEY,
      user_id         TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
      package_id      TEXT NOT NULL REFERENCES packages(id),
      score          DOUBLE PRECISION NOT NULL,
      correct_answers INTEGER NOT NULL,
      total_questions INTEGER NOT NULL,
      time_spent      INTEGER NOT NULL,
      started_at      TIMESTAMPTZ NOT NULL,
      completed_at    TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS quiz_answers (
      id                 TEXT PRIMARY KEY,
      attempt_id         TEXT NOT NULL REFERENCES quiz_attempts(id) ON DELETE CASCADE,
      question_id        TEXT NOT NULL REFERENCES questions(id),
      selected_answer_id TEXT REFERENCES answers(id),
      is_correct         BOOLEAN NOT NULL,
      points             DOUBLE PRECISION NOT NULL DEFAULT 0,
      position           INTEGER NOT NULL DEFAULT 0,
      created_at         TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS quiz_attempts_user_idx ON quiz_attempts (user_id, completed_at DESC);",
    "CREATE INDEX IF NOT EXISTS quiz_attempts_package_idx ON quiz_attempts (package_id);",
    "CREATE INDEX IF NOT EXISTS quiz_answers_attempt_idx ON quiz_answers (attempt_id, position);",
]

# Graded attempts are append-only: re-grading means a new row, never an UPDATE.
IMMUTABILITY: List[str] = [
    """
    CREATE OR REPLACE FUNCTION quiz_attempts_reject_update() RETURNS trigger AS $$
    BEGIN
      RAISE EXCEPTION 'quiz attempts are immutable';
    END;
    $$ LANGUAGE plpgsql;
    """,
    "DROP TRIGGER IF EXISTS quiz_attempts_immutable ON quiz_attempts;",
    """
    CREATE TRIGGER quiz_attempts_immutable
      BEFORE UPDATE ON quiz_attempts
      FOR EACH ROW EXECUTE FUNCTION quiz_attempts_reject_update();
    """,
    "DROP TRIGGER IF EXISTS quiz_answers_immutable ON quiz_answers;",
    """
    CREATE TRIGGER quiz_answers_immutable
      BEFORE UPDATE ON quiz_answers
      FOR EACH ROW EXECUTE FUNCTION quiz_attempts_reject_update();
    """,
]


def ensure_schema(db) -> int:
    """Create every table, index and trigger that is missing. Returns the statement count."""
    uow = db.unit_of_work()
    for ddl in TABLES + IMMUTABILITY:
        uow.add(ddl)
    uow.commit()
    print(f"[DB] schema ensured ({len(uow)} statements)")
    return len(uow)
