"""
Order Service — 注文・決済照合 (Order & Payment Reconciliation)
"""
