DDL = """
CREATE TABLE IF NOT EXISTS messages (
  id                   INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
  message_platform_id  TEXT NOT NULL,
  channel_platform_id  TEXT NOT NULL,
  kind                 TEXT NOT NULL,                 -- clé de dédup: "session:<id>:<palier>"
  series               TEXT NOT NULL,
  expires_at           TEXT NOT NULL,
  created_at           TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', CURRENT_TIMESTAMP))
);
-- idempotence stricte: un seul rappel par (session, palier)
CREATE UNIQUE INDEX IF NOT EXISTS ux_messages_kind ON messages(kind);
"""

def apply(con):
    con.executescript(DDL)
