DDL = """
CREATE INDEX IF NOT EXISTS idx_messages_expires ON messages(expires_at);
CREATE INDEX IF NOT EXISTS idx_sessions_start ON sessions(start_time, id);
CREATE INDEX IF NOT EXISTS idx_sessions_weekend ON sessions(weekend_id);
CREATE INDEX IF NOT EXISTS idx_weekends_status ON weekends(status);
"""
def apply(con): con.executescript(DDL)
