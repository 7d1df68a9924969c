"""
Issue tracker bus - main entry point.

Run with:
    python main.py

Or with uvicorn:
    uvicorn issuetracker.app:app --reload

Configuration:
    Environment variables (SERVICE_BUS_*) or a .env file
"""

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("issuetracker.app:app", host="0.0.0.0", port=8000)
