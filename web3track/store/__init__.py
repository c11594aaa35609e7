"""Stores for tracker state and filtered logs: in memory, SQLite file and SQL."""