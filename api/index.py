from mangum import Mangum

from ledger.api import create_app

app = create_app()
handler = Mangum(app, api_gateway_base_path="/api")
