from flowvault.client.cli import main

main()
