"""Automated payment reminders for overdue invoices."""
