# src/jira_time_cli/__init__.py
