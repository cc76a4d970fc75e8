DDL = """
CREATE TABLE IF NOT EXISTS weekends (
  id          INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
  name        TEXT NOT NULL,
  series      TEXT NOT NULL,                          -- "F1" | "F2" | "F3" | "F1Academy" | ...
  start_date  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d', CURRENT_TIMESTAMP)),
  status      TEXT NOT NULL DEFAULT 'scheduled'
              CHECK (status IN ('scheduled','active','completed','cancelled')),
  created_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', CURRENT_TIMESTAMP))
);

CREATE TABLE IF NOT EXISTS sessions (
  id          INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
  weekend_id  INTEGER NOT NULL,
  start_time  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', CURRENT_TIMESTAMP)),
  name        TEXT NOT NULL,
  duration    INTEGER NOT NULL DEFAULT 3600 CHECK (duration > 0),   -- secondes
  notify      TEXT NOT NULL DEFAULT '',               -- paliers: "24h,10m" ('' / 'off' = aucun)
  status      TEXT NOT NULL DEFAULT 'pending'
              CHECK (status IN ('pending','notified','started','completed')),
  created_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', CURRENT_TIMESTAMP)),
  FOREIGN KEY (weekend_id) REFERENCES weekends (id)
);
"""
def apply(con): con.executescript(DDL)
