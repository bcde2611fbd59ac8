"""
Server monitoring through a Zabbix server: the proxy routes the dashboard
calls, and the dashboard client itself.
"""
