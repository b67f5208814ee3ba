"""
Tool declarations and prompts handed to the inference provider.

The declarations are plain JSON-schema dicts so they can be inspected without
the provider SDK; adk_adapter turns them into FunctionDeclarations.
"""
from typing import Any, Dict, List

TOOL_DECLARATIONS: List[Dict[str, Any]] = [
    {
        "name": "check_account_status",
        "description": "Check if the user has connected their bank account. Call this FIRST before trying any banking operations.",
        "parameters": None,
    },
    {
        "name": "initiate_account_connection",
        "description": "Start connecting the user's bank account. Use when the user wants to connect an account or must connect before using banking features.",
        "parameters": None,
    },
    {
        "name": "get_all_accounts",
        "description": "List all connected bank accounts with their individual balances.",
        "parameters": None,
    },
    {
        "name": "get_total_balance",
        "description": "Get the combined balance across ALL connected bank accounts, in Naira.",
        "parameters": None,
    },
    {
        "name": "check_balance",
        "description": "Get the current balance of the user's bank account. Only works if an account is connected.",
        "parameters": {
            "type": "object",
            "properties": {
                "account_type": {
                    "type": "string",
                    "description": "The type of account (checking, savings, or all)",
                    "enum": ["checking", "savings", "all"],
                },
            },
        },
    },
    {
        "name": "get_transactions",
        "description": "Retrieve recent transaction history. Only works if an account is connected.",
        "parameters": {
            "type": "object",
            "properties": {
                "account": {
                    "type": "string",
                    "description": "Account type (checking, savings, or all)",
                    "enum": ["checking", "savings", "all"],
                },
                "days": {"type": "number", "description": "Number of days to look back, between 1 and 90 (default: 7)"},
            },
        },
    },
    {
        "name": "lookup_recipient",
        "description": (
            "Verify a recipient's bank account before a transfer. ALWAYS call this before initiating a transfer "
            "to verify the account holder's name. If verification fails, report the error instead of asking "
            "for the bank name again."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "account_number": {"type": "string", "description": "The 10-digit Nigerian bank account number"},
                "bank_name": {"type": "string", "description": "Name of the bank (e.g. 'Access Bank', 'GTBank', 'Zenith')"},
            },
            "required": ["account_number", "bank_name"],
        },
    },
    {
        "name": "transfer_money",
        "description": "Transfer money to a verified recipient (requires user confirmation). Call lookup_recipient first.",
        "parameters": {
            "type": "object",
            "properties": {
                "recipient_account_number": {"type": "string", "description": "Recipient's 10-digit account number"},
                "recipient_bank_code": {"type": "string", "description": "Recipient's bank code, or the bank name if the code is unknown"},
                "recipient_name": {"type": "string", "description": "Verified recipient name from lookup"},
                "amount": {"type": "number", "description": "Amount to transfer in Naira (minimum 100)"},
                "from_account_id": {"type": "string", "description": "Optional internal ID of the source account to debit"},
            },
            "required": ["recipient_account_number", "recipient_bank_code", "amount"],
        },
    },
    {
        "name": "get_spending_insights",
        "description": "Analyze spending patterns and provide insights. Only works if an account is connected.",
        "parameters": {
            "type": "object",
            "properties": {
                "timeframe": {"type": "string", "description": "Time period for analysis", "enum": ["week", "month", "year"]},
                "category": {"type": "string", "description": "Spending category to analyze (optional)"},
            },
            "required": ["timeframe"],
        },
    },
]

TOOL_PARAMETERS: Dict[str, tuple] = {
    tool["name"]: tuple((tool["parameters"] or {}).get("properties", {}).keys())
    for tool in TOOL_DECLARATIONS
}

SYSTEM_PROMPT = """
You are a warm and professional banking assistant for a Nigerian fintech platform. You help users manage
their accounts and send money through chat.

Function calling rules:
- Use the provided tools whenever real account data or an action is needed. Never make up data.
- Do not describe a function call to the user, just make the call.
- If you do not know whether the user has connected a bank account, call check_account_status.

Transfers:
- When the user says "transfer X to [account] [bank]", call lookup_recipient first, then transfer_money
  with the verified details.
- If the account number or bank is missing, ask for it. Bank aliases such as "GTB" are fine to pass through.
- Every transfer is confirmed by the user before money moves; the system asks for that confirmation itself.

Style:
- Use Nigerian Naira (₦) for all amounts. Balances from the system are in kobo unless a Naira field is given.
- Keep messages concise (2-4 lines).
"""

SUMMARY_PROMPT = """
Summarize the following banking data for the user in 2-4 short, friendly lines. Use ₦ for amounts and
never show raw field names, identifiers or JSON. If the data shows an error, explain it plainly.
"""
