import os

from purchase_fulfillment import create_app

app = create_app()

if __name__ == '__main__':
    app.run(debug=os.getenv('FLASK_DEBUG', '0') in {'1', 'true'}, port=int(os.getenv('PORT', '5000')))
