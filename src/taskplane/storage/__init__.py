"""SQLite persistence shared by the task store, signal queue and cron store."""
