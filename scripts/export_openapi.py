import json
import sys

from teamspace.main import create_app

app = create_app()
schema = app.openapi()
target = sys.argv[1] if len(sys.argv) > 1 else 'openapi.json'
with open(target, 'w') as f:
    json.dump(schema, f, indent=2)
print(f'Wrote {target}')
