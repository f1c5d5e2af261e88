# LangGraph workflows
from app.workflows.fulfilment import run_cod_checkout, run_prepaid_fulfilment

__all__ = ["run_cod_checkout", "run_prepaid_fulfilment"]
