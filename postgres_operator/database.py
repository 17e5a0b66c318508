"""
Direct PostgreSQL access

Used to install what PgBouncer needs inside the database: its login role, a
schema, and a SECURITY DEFINER function that returns password verifiers for
its auth_query.
"""

import logging
from typing import Callable

import psycopg2
from psycopg2 import sql

from postgres_operator.context import Context

logger = logging.getLogger("postgres-operator.database")

GET_AUTH_FUNCTION = """
CREATE OR REPLACE FUNCTION pgbouncer.get_auth(username TEXT)
RETURNS TABLE(username TEXT, password TEXT) AS $$
  SELECT rolname::TEXT, rolpassword::TEXT
    FROM pg_catalog.pg_authid
   WHERE pg_authid.rolname = $1
     AND pg_authid.rolcanlogin
     AND NOT pg_authid.rolsuper
     AND NOT pg_authid.rolreplication
     AND pg_authid.rolname <> {pooler}
     AND (pg_authid.rolvaliduntil IS NULL OR pg_authid.rolvaliduntil >= CURRENT_TIMESTAMP)
$$ LANGUAGE SQL STABLE SECURITY DEFINER SET search_path = pg_catalog;
"""


class DatabaseClient:
    """Handles all PostgreSQL database interactions for one cluster"""

    def __init__(self, host: str, port: int, user: str, password: str,
                 dbname: str = "postgres", connect_timeout: int = 10,
                 connect: Callable = psycopg2.connect):
        self.dsn = dict(
            host=host, port=port, dbname=dbname, user=user, password=password,
            sslmode="require", application_name="postgres-operator",
        )
        self.connect_timeout = connect_timeout
        self._connect = connect

    def _timeouts(self, ctx: Context) -> dict:
        """Connection and statement timeouts bounded by what is left of ctx"""
        remaining = ctx.remaining()
        if remaining is None:
            return {"connect_timeout": self.connect_timeout}
        # libpq treats 0 as "wait forever" and rounds 1 up to 2
        seconds = max(int(remaining), 2)
        return {
            "connect_timeout": min(seconds, self.connect_timeout),
            "options": f"-c statement_timeout={max(int(remaining * 1000), 1)}",
        }

    def install_pgbouncer_auth(self, ctx: Context, pooler_user: str, pooler_password: str):
        """
        Create or update the pooler role, schema and auth function

        Runs in one transaction; every statement is safe to repeat.

        Args:
            ctx: Attempt context; bounds connecting and every statement
            pooler_user: Role PgBouncer logs in as
            pooler_password: Its password; stored as a SCRAM verifier
        """
        ctx.check()
        conn = None
        try:
            conn = self._connect(**self.dsn, **self._timeouts(ctx))
            with conn.cursor() as cur:
                cur.execute("SET LOCAL password_encryption = 'scram-sha-256';")
                cur.execute("SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = %s;", (pooler_user,))
                verb = "ALTER" if cur.fetchone() else "CREATE"
                cur.execute(
                    sql.SQL(verb + " ROLE {} LOGIN PASSWORD %s;").format(sql.Identifier(pooler_user)),
                    (pooler_password,)
                )

                cur.execute("CREATE SCHEMA IF NOT EXISTS pgbouncer;")
                cur.execute("REVOKE ALL PRIVILEGES ON SCHEMA pgbouncer FROM PUBLIC;")
                cur.execute(sql.SQL("GRANT USAGE ON SCHEMA pgbouncer TO {};").format(
                    sql.Identifier(pooler_user)))

                cur.execute(sql.SQL(GET_AUTH_FUNCTION).format(pooler=sql.Literal(pooler_user)))
                cur.execute("REVOKE ALL PRIVILEGES ON FUNCTION pgbouncer.get_auth(username TEXT) FROM PUBLIC;")
                cur.execute(sql.SQL("GRANT EXECUTE ON FUNCTION pgbouncer.get_auth(username TEXT) TO {};").format(
                    sql.Identifier(pooler_user)))
            conn.commit()
            logger.info(f"Installed PgBouncer auth function for {pooler_user} on {self.dsn['host']}")
        except psycopg2.Error as e:
            logger.error(f"Error installing PgBouncer auth on {self.dsn['host']}: {e}")
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

