import azure.functions as func

from shared.db import init_db

# Creates the identity tables on first start.
init_db()

app = func.FunctionApp()

# Import endpoint modules so their routes register with the shared app.
import auth_endpoints  # noqa
import crm_endpoints  # noqa
